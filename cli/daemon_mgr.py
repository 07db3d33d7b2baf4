"""Daemon lifecycle management - start, stop, status via a PID file.

The server daemon is the same ``relay server start`` command line
re-executed without ``--daemon`` in a new session. No service manager
is involved; the PID file is the only record.
"""

import os
import signal
import subprocess
from pathlib import Path

from core.config import ENV_DAEMON_CHILD, PID_FILE, read_env_file
from core.errors import DaemonError

# ---------------------------------------------------------------------------
# Process control
# ---------------------------------------------------------------------------


class ProcessControl:
    """OS process operations used by DaemonManager. Replaced in tests."""

    def start(
        self,
        argv: list[str],
        env: dict[str, str],
        cwd: Path | None = None,
        log_file: Path | None = None,
    ) -> int:
        """Spawn ``argv`` detached from this session. Returns its PID."""
        stdout = subprocess.DEVNULL
        log_handle = None
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = open(log_file, "ab")
            stdout = log_handle
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        finally:
            # The child holds its own descriptor.
            if log_handle is not None:
                log_handle.close()
        return proc.pid

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        return True

    def terminate(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class DaemonManager:
    """Start, stop and report on the background interaction server."""

    def __init__(
        self,
        pid_file: Path | None = None,
        log_file: Path | None = None,
        workdir: Path | None = None,
        env_file: Path | None = None,
        process_control: ProcessControl | None = None,
    ) -> None:
        self.pid_path = Path(pid_file).expanduser() if pid_file else PID_FILE
        self.log_file = Path(log_file).expanduser() if log_file else None
        self.workdir = Path(workdir).expanduser() if workdir else None
        self.env_file = Path(env_file).expanduser() if env_file else None
        self.process = process_control or ProcessControl()

    def read_pid(self) -> int | None:
        """Return the recorded PID, or None if the file is missing or garbled."""
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def start(self, argv: list[str]) -> int:
        """Spawn the daemon child and record its PID.

        Raises:
            DaemonError: A daemon is already running, or the child could
                not be spawned.
        """
        pid = self.read_pid()
        if pid is not None and self.process.is_alive(pid):
            raise DaemonError(
                f"daemon already running (pid {pid})",
                hint="Run `relay server stop` first.",
            )

        env = dict(os.environ)
        env.update(read_env_file(self.env_file))
        env[ENV_DAEMON_CHILD] = "1"

        try:
            child = self.process.start(argv, env, cwd=self.workdir, log_file=self.log_file)
        except OSError as e:
            raise DaemonError(f"start daemon: {e}") from e

        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(f"{child}\n")
        return child

    def stop(self) -> None:
        """Send SIGTERM to the recorded PID and remove the PID file.

        Raises:
            DaemonError: No PID file, or the signal could not be delivered.
        """
        pid = self.read_pid()
        if pid is None:
            raise DaemonError(
                f"no pid file at {self.pid_path}",
                hint="Is the server running in daemon mode?",
            )
        try:
            self.process.terminate(pid)
        except ProcessLookupError:
            pass  # already exited
        except OSError as e:
            raise DaemonError(f"stop daemon (pid {pid}): {e}") from e
        self.pid_path.unlink(missing_ok=True)

    def status(self) -> str:
        pid = self.read_pid()
        if pid is None:
            return "stopped"
        if self.process.is_alive(pid):
            return f"running (pid {pid})"
        return f"stale pid file ({pid})"


def filter_daemon_argv(argv: list[str]) -> list[str]:
    """Drop ``--daemon`` so the re-executed child runs in the foreground."""
    return [arg for arg in argv if arg != "--daemon"]
