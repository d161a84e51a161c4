"""
Gateway supervisor - keeps exactly one gateway process alive per sandbox.

``ensure_running()`` is idempotent and single-flight: concurrent callers share
one start attempt and observe the same result. An attempt:

1. probe    - HTTP request to the gateway port; any response means it is up
2. clear_locks - remove lock files left behind by an unclean shutdown
3. write_config - write the materialised config next to the gateway
4. spawn    - start ``openclaw gateway`` with the launch flags
5. await_ready - poll the port with backoff until the deadline

If the deadline passes, the spawned process is terminated rather than left
orphaned so the next attempt starts from a free port. Failures are returned
as StartResult values carrying the step they came from, never raised.

A detached supervisor starts the gateway in its own session with output
written to a log file, so the gateway outlives the event loop (and the
command) that started it.
"""

import asyncio
import contextlib
import subprocess
import time
from collections import deque
from pathlib import Path
from typing import Any

import httpx

from ..config.store import write_config
from ..log_config import get_logger
from ..settings import SandboxSettings
from .types import GatewayStatus, StartResult, StartupFailure, StartupStep


class StartupStepError(Exception):
    """A low-level failure annotated with the startup step it happened in."""

    def __init__(self, step: StartupStep, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step.value}: {type(cause).__name__}: {cause}")


@contextlib.contextmanager
def _step(step: StartupStep):
    try:
        yield
    except StartupStepError:
        raise
    except Exception as e:
        raise StartupStepError(step, e) from e


class DetachedProcess:
    """A gateway started outside the event loop, polled through Popen."""

    def __init__(self, popen: subprocess.Popen):
        self.popen = popen

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> int | None:
        return self.popen.poll()

    def terminate(self) -> None:
        self.popen.terminate()

    def kill(self) -> None:
        self.popen.kill()

    async def wait(self) -> int:
        return await asyncio.to_thread(self.popen.wait)


class GatewaySupervisor:
    """Start, detect and await the singleton gateway process."""

    PROBE_TIMEOUT = 2.0
    POLL_INITIAL = 0.25
    POLL_MAX = 2.0
    OUTPUT_TAIL_LINES = 50
    TERMINATE_TIMEOUT = 10.0

    def __init__(
        self,
        port: int = 18789,
        config_path: Path = Path("/root/.clawdbot/openclaw.json"),
        lock_files: tuple[Path, ...] = (),
        command: str = "openclaw",
        bind_mode: str = "lan",
        ready_timeout: float = 180.0,
        detach: bool = False,
    ):
        self.port = port
        self.config_path = config_path
        self.lock_files = lock_files
        self.command = command
        self.bind_mode = bind_mode
        self.ready_timeout = ready_timeout
        self.detach = detach
        self.log_path = config_path.parent / "gateway.log"

        self.status = GatewayStatus.NOT_RUNNING
        self.last_result: StartResult | None = None
        self.process: asyncio.subprocess.Process | DetachedProcess | None = None
        self.output_tail: deque[str] = deque(maxlen=self.OUTPUT_TAIL_LINES)

        self._inflight: asyncio.Task[StartResult] | None = None
        self._log_task: asyncio.Task[None] | None = None

        self.log = get_logger("supervisor", service="sandbox", gateway_port=port)

    @classmethod
    def from_settings(cls, settings: SandboxSettings, detach: bool = False) -> "GatewaySupervisor":
        return cls(
            port=settings.gateway_port,
            config_path=settings.config_path,
            lock_files=settings.lock_files,
            command=settings.gateway_command,
            bind_mode=settings.gateway_bind_mode,
            ready_timeout=settings.gateway_ready_timeout,
            detach=detach,
        )

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def owns_live_process(self) -> bool:
        """True while a gateway spawned by this supervisor has not exited."""
        return self.process is not None and self.process.returncode is None

    def build_command(self, config: dict[str, Any]) -> list[str]:
        """Launch flags; without a token the gateway expects device pairing."""
        argv = [
            self.command,
            "gateway",
            "--port",
            str(self.port),
            "--verbose",
            "--allow-unconfigured",
            "--bind",
            self.bind_mode,
        ]
        token = ((config.get("gateway") or {}).get("auth") or {}).get("token")
        if token:
            argv += ["--token", token]
        return argv

    async def ensure_running(self, config: dict[str, Any]) -> StartResult:
        """Return once the gateway is Ready or the start attempt has failed."""
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._start_attempt(config))
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[StartResult]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def is_listening(self) -> bool:
        """Liveness check: the gateway answers HTTP on its port."""
        try:
            async with httpx.AsyncClient() as client:
                await client.get(f"{self.base_url}/", timeout=self.PROBE_TIMEOUT)
            return True
        except httpx.TransportError:
            return False

    async def _start_attempt(self, config: dict[str, Any]) -> StartResult:
        start_time = time.time()
        spawned = False

        try:
            with _step(StartupStep.PROBE):
                if await self.is_listening():
                    self.log.debug("gateway.already_running")
                    return self._finish(StartResult(status=GatewayStatus.READY, pid=self._pid()))

            self.status = GatewayStatus.STARTING
            self.log.info("gateway.start")

            with _step(StartupStep.CLEAR_LOCKS):
                self._clear_stale_locks()

            with _step(StartupStep.WRITE_CONFIG):
                write_config(self.config_path, config)

            with _step(StartupStep.SPAWN):
                await self._spawn(config)
                spawned = True

            with _step(StartupStep.AWAIT_READY):
                failure = await self._wait_for_ready()

            if failure is not None:
                await self._terminate()
                result = StartResult(status=GatewayStatus.FAILED, spawned=True, failure=failure)
            else:
                result = StartResult(status=GatewayStatus.READY, spawned=True, pid=self._pid())

        except StartupStepError as e:
            if spawned:
                await self._terminate()
            result = StartResult(
                status=GatewayStatus.FAILED,
                spawned=spawned,
                failure=StartupFailure(
                    step=e.step,
                    reason=str(e),
                    last_output=self._last_output(),
                    exit_code=self._exit_code(),
                ),
            )

        duration_ms = int((time.time() - start_time) * 1000)
        if result.ready:
            self.log.info("gateway.ready", pid=result.pid, duration_ms=duration_ms)
        else:
            failure = result.failure
            self.log.error(
                "gateway.start_failed",
                step=failure.step.value if failure else None,
                reason=failure.reason if failure else None,
                last_output=failure.last_output if failure else None,
                exit_code=failure.exit_code if failure else None,
                duration_ms=duration_ms,
            )
        return self._finish(result)

    def _finish(self, result: StartResult) -> StartResult:
        self.status = result.status
        self.last_result = result
        return result

    def _clear_stale_locks(self) -> None:
        for lock_file in self.lock_files:
            if lock_file.exists():
                self.log.info("gateway.stale_lock_removed", path=str(lock_file))
            lock_file.unlink(missing_ok=True)

    async def _spawn(self, config: dict[str, Any]) -> None:
        argv = self.build_command(config)
        self.output_tail.clear()
        self.log.info(
            "gateway.spawn",
            bind_mode=self.bind_mode,
            auth="token" if "--token" in argv else "device_pairing",
        )

        if self.detach:
            self.process = self._spawn_detached(argv)
            return

        self.process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=self.config_path.parent,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._log_task = asyncio.create_task(self._forward_gateway_logs(self.process))

    def _spawn_detached(self, argv: list[str]) -> DetachedProcess:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "wb") as log_file:
            popen = subprocess.Popen(
                argv,
                cwd=self.config_path.parent,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self.log.info("gateway.detached", pid=popen.pid, log_path=str(self.log_path))
        return DetachedProcess(popen)

    async def _forward_gateway_logs(self, process: asyncio.subprocess.Process) -> None:
        """Forward gateway stdout to supervisor stdout, keeping the tail for diagnostics."""
        if not process.stdout:
            return

        try:
            async for line in process.stdout:
                text = line.decode(errors="replace").rstrip()
                self.output_tail.append(text)
                print(f"[gateway] {text}")
        except Exception as e:
            self.log.warn("gateway.log_forward_error", exc=e)

    async def _wait_for_ready(self) -> StartupFailure | None:
        """Poll the gateway port until it answers, it exits, or the deadline passes."""
        deadline = time.monotonic() + self.ready_timeout
        delay = self.POLL_INITIAL

        while True:
            if self.process and self.process.returncode is not None:
                await self._drain_logs()
                return StartupFailure(
                    step=StartupStep.AWAIT_READY,
                    reason="gateway exited before becoming ready",
                    last_output=self._last_output(),
                    exit_code=self.process.returncode,
                )

            if await self.is_listening():
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return StartupFailure(
                    step=StartupStep.AWAIT_READY,
                    reason=f"gateway not ready after {self.ready_timeout:g}s",
                    last_output=self._last_output(),
                    exit_code=None,
                )

            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self.POLL_MAX)

    async def _drain_logs(self) -> None:
        if self._log_task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._log_task), timeout=1.0)
        except TimeoutError:
            pass

    async def _terminate(self) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return

        self.log.warn("gateway.terminate", pid=process.pid)
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.TERMINATE_TIMEOUT)
        except TimeoutError:
            process.kill()
            await process.wait()

    def _pid(self) -> int | None:
        if self.process and self.process.returncode is None:
            return self.process.pid
        return None

    def _exit_code(self) -> int | None:
        return self.process.returncode if self.process else None

    def _last_output(self) -> str | None:
        if self.detach:
            self._read_log_tail()
        for line in reversed(self.output_tail):
            if line.strip():
                return line
        return None

    def _read_log_tail(self) -> None:
        try:
            lines = self.log_path.read_text(errors="replace").splitlines()
        except OSError:
            return
        self.output_tail.clear()
        self.output_tail.extend(line.rstrip() for line in lines[-self.OUTPUT_TAIL_LINES :])

    async def shutdown(self) -> None:
        """Stop a gateway this supervisor spawned."""
        self.log.info("supervisor.shutdown_start")
        await self._terminate()
        if self._log_task:
            self._log_task.cancel()
        self.status = GatewayStatus.NOT_RUNNING
        self.log.info("supervisor.shutdown_complete")
