"""Reading the base config and writing the materialised one to local disk."""

import json
import os
from pathlib import Path
from typing import Any

from ..log_config import get_logger
from ..settings import GATEWAY_PORT, SandboxSettings

log = get_logger("config", service="sandbox")


def minimal_config(settings: SandboxSettings) -> dict[str, Any]:
    return {
        "agents": {"defaults": {"workspace": str(settings.workspace_dir)}},
        "gateway": {"port": GATEWAY_PORT, "mode": "local"},
    }


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.warn("config.invalid", path=str(path), exc=e)
        return {}
    if not isinstance(data, dict):
        log.warn("config.invalid", path=str(path), detail="top-level value is not an object")
        return {}
    return data


def load_base_config(settings: SandboxSettings) -> dict[str, Any]:
    """
    Load the document to materialise on top of.

    Order: existing config, template, legacy config file, minimal default.
    """
    candidates = (
        ("existing", settings.config_path),
        ("template", settings.template_file),
        ("legacy", settings.config_dir / settings.legacy_config_filename),
    )
    for source, path in candidates:
        if path.is_file():
            log.info("config.load", source=source, path=str(path))
            return _read_json(path)

    log.info("config.load", source="minimal")
    return minimal_config(settings)


def write_config(path: Path, config: dict[str, Any]) -> None:
    """Write ``config`` as pretty JSON, atomically replacing ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_name(f".{path.name}.tmp")

    # The config carries channel and provider secrets.
    fd = os.open(str(tmp_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, json.dumps(config, indent=2).encode())
    finally:
        os.close(fd)
    tmp_file.replace(path)
