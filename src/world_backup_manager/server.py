from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Protocol
import shutil
import subprocess
import time

from .config import ServerControlConfig, TimeoutConfig
from .errors import ServerUnresponsive
from .logs import BackupLogger
from .models import ServerState


class ServerControl(Protocol):
    def request_quiesce(self, timeout: float) -> bool: ...

    def request_resume(self, timeout: float) -> bool: ...

    def abort_quiesce(self, timeout: float) -> bool: ...


class CommandServerControl:
    """Drive the server console through a command prefix such as ``docker exec mc rcon-cli``.

    Quiesce disables autosave and forces a flush (``save-off`` then ``save-all flush``),
    then waits ``flush_wait_seconds`` for the world files to settle. Resume and abort
    both re-enable autosave with ``save-on``.
    """

    def __init__(self, config: ServerControlConfig) -> None:
        if not config.command:
            raise ValueError("server control command must not be empty")
        self.config = config

    def request_quiesce(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        if not self._send("save-off", deadline=deadline):
            return False
        if not self._send("save-all", "flush", deadline=deadline):
            return False
        remaining = deadline - time.monotonic()
        if self.config.flush_wait_seconds > remaining:
            return False
        time.sleep(self.config.flush_wait_seconds)
        return True

    def request_resume(self, timeout: float) -> bool:
        return self._send("save-on", deadline=time.monotonic() + timeout)

    def abort_quiesce(self, timeout: float) -> bool:
        return self._send("save-on", deadline=time.monotonic() + timeout)

    def _send(self, *console_command: str, deadline: float) -> bool:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False

        executable = shutil.which(self.config.command[0])
        if executable is None:
            raise RuntimeError(f"{self.config.command[0]} is required for server control but was not found in PATH")

        try:
            completed = subprocess.run(
                [executable, *self.config.command[1:], *console_command],
                check=False,
                capture_output=True,
                text=True,
                timeout=remaining,
            )
        except subprocess.TimeoutExpired:
            return False
        return completed.returncode == 0


class ServerCoordinator:
    def __init__(
        self,
        *,
        control: ServerControl,
        timeouts: TimeoutConfig,
        logger: BackupLogger | None = None,
    ) -> None:
        self.control = control
        self.timeouts = timeouts
        self.logger = logger or BackupLogger()
        self._state = ServerState.RUNNING

    @property
    def state(self) -> ServerState:
        return self._state

    def quiesce(self) -> bool:
        if self._state != ServerState.RUNNING:
            raise RuntimeError(f"cannot quiesce while server is {self._state.value}")

        self._transition(ServerState.QUIESCING)
        try:
            acknowledged = self.control.request_quiesce(self.timeouts.quiesce_seconds)
            failure = "" if acknowledged else f"no acknowledgement within {self.timeouts.quiesce_seconds}s"
        except Exception as error:  # pylint: disable=broad-except
            acknowledged = False
            failure = _error_message(error)

        if acknowledged:
            self._transition(ServerState.QUIESCED)
            return True

        self.logger.warning("quiesce_failed", reason=failure)
        self._abort_quiesce()
        self._transition(ServerState.RUNNING)
        return False

    def resume(self) -> None:
        if self._state == ServerState.RUNNING:
            return

        self._transition(ServerState.RESUMING)
        attempts = self.timeouts.resume_attempts
        last_failure = "unknown error"
        try:
            for attempt in range(1, attempts + 1):
                try:
                    if self.control.request_resume(self.timeouts.resume_seconds):
                        self.logger.info("server_resumed", attempt=attempt)
                        return
                    last_failure = f"no acknowledgement within {self.timeouts.resume_seconds}s"
                except Exception as error:  # pylint: disable=broad-except
                    last_failure = _error_message(error)

                self.logger.warning("resume_attempt_failed", attempt=attempt, reason=last_failure)
                if attempt < attempts:
                    time.sleep(self.timeouts.resume_backoff_seconds * 2 ** (attempt - 1))
        finally:
            self._transition(ServerState.RUNNING)

        raise ServerUnresponsive(stage="resume", reason=f"{last_failure} (after {attempts} attempts)")

    @contextmanager
    def session(self) -> Iterator[bool]:
        """Quiesce for the duration of the block; always resume afterwards if quiesce succeeded."""
        quiesced = self.quiesce()
        try:
            yield quiesced
        finally:
            if quiesced:
                self.resume()

    def _abort_quiesce(self) -> None:
        try:
            if not self.control.abort_quiesce(self.timeouts.resume_seconds):
                self.logger.warning("quiesce_abort_unacknowledged")
        except Exception as error:  # pylint: disable=broad-except
            self.logger.warning("quiesce_abort_failed", reason=_error_message(error))

    def _transition(self, state: ServerState) -> None:
        self.logger.debug("server_state", previous=self._state.value, current=state.value)
        self._state = state


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


__all__ = [
    "CommandServerControl",
    "ServerControl",
    "ServerCoordinator",
]
