import os
import time
import shutil
import signal
import logging
import subprocess
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

Command = Union[str, List[str]]


class ExternalProcess:
    """
    Owns one child (ping, iperf3, avahi, user scripts).

    The child runs in its own process group so shell pipelines are
    signalled as a whole. stdout/stderr go to ``log_path`` or /dev/null.
    The child is reaped exactly once, by poll() or terminate().
    """

    def __init__(self, name: str = "child"):
        self.name = name
        self.proc: Optional[subprocess.Popen] = None
        self.started_at = 0.0
        self.returncode: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.proc is not None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    def start(self, cmd: Command, log_path: Optional[str] = None, append: bool = False,
              merge_stderr: bool = True) -> bool:
        """A str is run through /bin/sh -c, a list is exec'd directly."""
        if self.proc is not None:
            self.terminate()
        argv = ["/bin/sh", "-c", cmd] if isinstance(cmd, str) else list(cmd)
        self.returncode = None

        out = subprocess.DEVNULL
        logf = None
        if log_path:
            try:
                logf = open(log_path, "a" if append else "w")
                out = logf
            except OSError as e:
                logger.warning(f"Cannot open log {log_path}: {e}")

        try:
            self.proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT if logf and merge_stderr else subprocess.DEVNULL,
                preexec_fn=os.setsid,
                close_fds=True,
            )
        except OSError as e:
            logger.error(f"[{self.name}] failed to start {argv!r}: {e}")
            self.proc = None
            return False
        finally:
            if logf:
                logf.close()

        self.started_at = time.monotonic()
        logger.debug(f"[{self.name}] started pid={self.proc.pid} cmd={argv!r}")
        return True

    def elapsed(self) -> float:
        if self.proc is None:
            return 0.0
        return time.monotonic() - self.started_at

    def poll(self) -> Optional[int]:
        """Non-blocking. Returns the exit code once the child has finished, else None."""
        if self.proc is None:
            return None
        rc = self.proc.poll()
        if rc is None:
            return None
        self.returncode = rc
        self.proc = None
        logger.debug(f"[{self.name}] exited rc={rc}")
        return rc

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.proc.send_signal(sig)

    def terminate(self, grace: float = 1.0) -> None:
        """SIGTERM, wait up to ``grace`` seconds, then SIGKILL and reap."""
        if self.proc is None:
            return
        proc = self.proc
        if proc.poll() is None:
            self._signal(signal.SIGTERM)
            try:
                proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.debug(f"[{self.name}] did not exit, killing")
                self._signal(signal.SIGKILL)
                proc.wait()
        self.returncode = proc.returncode
        self.proc = None


def run_capture(cmd: Command, timeout: float = 10.0) -> str:
    """Run a command synchronously and return its stdout ("" on any failure)."""
    try:
        res = subprocess.run(
            cmd,
            shell=isinstance(cmd, str),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Command failed: {cmd!r}: {e}")
        return ""
    return res.stdout or ""


def run_status(cmd: Command, timeout: float = 30.0) -> int:
    """Run a command synchronously and return its exit status (-1 if it could not run)."""
    try:
        return subprocess.run(
            cmd,
            shell=isinstance(cmd, str),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        ).returncode
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Command failed: {cmd!r}: {e}")
        return -1


def which(name: str) -> Optional[str]:
    return shutil.which(name)
