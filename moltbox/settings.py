"""Runtime settings for the sandbox, read once from the environment."""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

GATEWAY_PORT = 18789


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class SandboxSettings(BaseModel):
    """
    Paths, ports and flags shared by the sync engine, supervisor and proxy.

    Paths keep the legacy ``.clawdbot`` / ``moltbot`` names so existing
    durable backups and gateway tokens keep working.
    """

    config_dir: Path = Path("/root/.clawdbot")
    config_filename: str = "openclaw.json"
    legacy_config_filename: str = "clawdbot.json"
    template_file: Path = Path("/root/.clawdbot-templates/moltbot.json.template")
    durable_root: Path = Path("/data/moltbot")
    workspace_dir: Path = Path("/root/clawd")
    skills_dir: Path = Path("/root/clawd/skills")

    gateway_command: str = "openclaw"
    gateway_port: int = GATEWAY_PORT
    gateway_bind_mode: str = "lan"
    gateway_ready_timeout: float = 180.0
    stale_lock_files: tuple[Path, ...] = (Path("/tmp/openclaw-gateway.lock"),)

    backup_interval: float = 300.0

    dev_mode: bool = False
    access_team_domain: str = ""
    access_audience: str = ""
    access_keys_ttl: float = 300.0

    proxy_host: str = "0.0.0.0"
    proxy_port: int = 8080

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_filename

    @property
    def lock_files(self) -> tuple[Path, ...]:
        return (*self.stale_lock_files, self.config_dir / "gateway.lock")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SandboxSettings":
        env = os.environ if env is None else env
        defaults = cls()

        config_dir = Path(env.get("MOLTBOX_CONFIG_DIR") or defaults.config_dir)
        workspace_dir = Path(env.get("MOLTBOX_WORKSPACE_DIR") or defaults.workspace_dir)

        return cls(
            config_dir=config_dir,
            template_file=Path(env.get("MOLTBOX_TEMPLATE_FILE") or defaults.template_file),
            durable_root=Path(env.get("MOLTBOX_DURABLE_ROOT") or defaults.durable_root),
            workspace_dir=workspace_dir,
            skills_dir=Path(env.get("MOLTBOX_SKILLS_DIR") or workspace_dir / "skills"),
            gateway_command=env.get("GATEWAY_COMMAND") or defaults.gateway_command,
            gateway_ready_timeout=_float_env(
                env, "GATEWAY_READY_TIMEOUT_SECONDS", defaults.gateway_ready_timeout
            ),
            backup_interval=_float_env(env, "BACKUP_INTERVAL_SECONDS", defaults.backup_interval),
            dev_mode=env.get("OPENCLAW_DEV_MODE") == "true",
            access_team_domain=env.get("CF_ACCESS_TEAM_DOMAIN", ""),
            access_audience=env.get("CF_ACCESS_AUD", ""),
            access_keys_ttl=_float_env(env, "ACCESS_KEYS_TTL_SECONDS", defaults.access_keys_ttl),
            proxy_host=env.get("PROXY_HOST") or defaults.proxy_host,
            proxy_port=int(_float_env(env, "PROXY_PORT", defaults.proxy_port)),
        )
