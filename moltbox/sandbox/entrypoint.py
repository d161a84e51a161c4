#!/usr/bin/env python3
"""
Sandbox entrypoint - boot sequence and command line.

Boot order:
1. Restore durable state (config, workspace, skills) if the backup is newer
2. Load the base config (existing -> template -> legacy -> minimal)
3. Materialise it against the environment
4. Ensure the gateway is running with the materialised config

Commands:
    moltbox boot     run the boot sequence once, print the StartResult as JSON;
                     the gateway is detached and keeps running after exit
    moltbox backup   copy local state to durable storage
    moltbox serve    run the authenticating proxy (boots in its lifespan)
"""

import argparse
import asyncio
import json
import os
import sys
import time
from collections.abc import Mapping
from typing import Any

from ..config import ConfigMaterializationError, load_base_config, materialize
from ..log_config import configure_logging, get_logger
from ..settings import SandboxSettings
from .supervisor import GatewaySupervisor
from .sync import DurableStateSync
from .types import BackupOutcome, BackupStatus, GatewayStatus, StartResult, StartupFailure, StartupStep

log = get_logger("entrypoint", service="sandbox")


def prepare_config(
    settings: SandboxSettings,
    sync: DurableStateSync | None = None,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Restore durable state, then build the gateway config.

    Raises:
        ConfigMaterializationError: the environment cannot be turned into a
            valid config (e.g. allow-list policy without a list)
    """
    sync = sync or DurableStateSync.from_settings(settings)
    env = os.environ if env is None else env

    sync.restore()
    base = load_base_config(settings)
    return materialize(base, env)


def materialize_failure(e: ConfigMaterializationError) -> StartResult:
    return StartResult(
        status=GatewayStatus.FAILED,
        failure=StartupFailure(step=StartupStep.MATERIALIZE, reason=str(e)),
    )


async def boot(
    settings: SandboxSettings,
    sync: DurableStateSync | None = None,
    supervisor: GatewaySupervisor | None = None,
    env: Mapping[str, str] | None = None,
) -> StartResult:
    """Run the full boot sequence and return the gateway's StartResult."""
    boot_start = time.time()
    supervisor = supervisor or GatewaySupervisor.from_settings(settings)

    try:
        config = await asyncio.to_thread(prepare_config, settings, sync, env)
    except ConfigMaterializationError as e:
        log.error("sandbox.config_error", exc=e)
        result = materialize_failure(e)
    else:
        result = await supervisor.ensure_running(config)

    log.info(
        "sandbox.startup",
        gateway_status=result.status.value,
        failed_step=result.failure.step.value if result.failure else None,
        duration_ms=int((time.time() - boot_start) * 1000),
        outcome="success" if result.ready else "error",
    )
    return result


def run_backup(settings: SandboxSettings) -> BackupOutcome:
    return DurableStateSync.from_settings(settings).backup()


def serve(settings: SandboxSettings) -> None:
    import uvicorn

    from ..web_api import create_app

    uvicorn.run(create_app(settings), host=settings.proxy_host, port=settings.proxy_port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="moltbox", description="OpenClaw sandbox runtime")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("boot", help="restore state, materialise config and start the gateway")
    subcommands.add_parser("backup", help="copy local state to durable storage")
    subcommands.add_parser("serve", help="run the authenticating proxy")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the sandbox command line."""
    args = build_parser().parse_args(argv)
    configure_logging()
    settings = SandboxSettings.from_env()

    if args.command == "boot":
        supervisor = GatewaySupervisor.from_settings(settings, detach=True)
        result = asyncio.run(boot(settings, supervisor=supervisor))
        print(json.dumps(result.model_dump(mode="json")))
        return 0 if result.ready else 1

    if args.command == "backup":
        outcome = run_backup(settings)
        print(json.dumps(outcome.model_dump(mode="json")))
        return 1 if outcome.status == BackupStatus.PARTIAL else 0

    serve(settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
