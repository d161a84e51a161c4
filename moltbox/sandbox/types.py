"""Type definitions for gateway supervision and durable state sync."""

from enum import Enum

from pydantic import BaseModel, Field


class GatewayStatus(str, Enum):
    """Lifecycle of the supervised gateway process."""

    NOT_RUNNING = "not_running"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class StartupStep(str, Enum):
    """Boot step a startup failure originated in."""

    MATERIALIZE = "materialize"
    PROBE = "probe"
    CLEAR_LOCKS = "clear_locks"
    WRITE_CONFIG = "write_config"
    SPAWN = "spawn"
    AWAIT_READY = "await_ready"


class StartupFailure(BaseModel):
    """Why the gateway did not reach Ready."""

    step: StartupStep
    reason: str
    last_output: str | None = None
    exit_code: int | None = None


class StartResult(BaseModel):
    """Terminal result of an ensure_running() attempt."""

    status: GatewayStatus
    spawned: bool = False
    pid: int | None = None
    failure: StartupFailure | None = None

    @property
    def ready(self) -> bool:
        return self.status == GatewayStatus.READY


class RestoreStatus(str, Enum):
    NOT_MOUNTED = "not_mounted"
    NO_BACKUP = "no_backup"
    SKIPPED = "skipped"
    RESTORED = "restored"


class RestoreOutcome(BaseModel):
    status: RestoreStatus
    remote_marker: str | None = None
    local_marker: str | None = None
    restored: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    legacy_layout: bool = False
    migrated_legacy_config: bool = False


class BackupStatus(str, Enum):
    NOT_MOUNTED = "not_mounted"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    COMPLETED = "completed"


class BackupOutcome(BaseModel):
    status: BackupStatus
    reason: str | None = None
    synced: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    marker: str | None = None
