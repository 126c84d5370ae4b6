import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

from hotspotd.cmd import privilege_prefix
from hotspotd.errors import SpawnFailed

log = logging.getLogger("hotspotd.supervisor")

OUTPUT_TAIL_MAX_LINES = 200
TERMINATE_GRACE_S = 5.0
_KILL_WAIT_S = 2.0


def _reader_thread(stream, tail: Deque[str], label: str) -> None:
    try:
        for line in iter(stream.readline, ""):
            if not line:
                break
            tail.append(line.rstrip("\n"))
    except Exception:
        tail.append(f"[{label}] reader error")
    finally:
        try:
            stream.close()
        except Exception:
            pass


def _redact_cmd(cmd: Sequence[str]) -> List[str]:
    out = list(cmd)
    for i, arg in enumerate(out):
        if arg in ("-p", "--passphrase") and i + 1 < len(out):
            out[i + 1] = "********"
        elif arg.startswith("wpa_passphrase="):
            out[i] = "wpa_passphrase=********"
    return out


def _kill_process_group(pid: int, sig: int, prefix: Sequence[str] = ()) -> None:
    """
    Signal the daemon's whole process group (it runs in its own session),
    falling back to the pid alone. When the daemon is wrapped in sudo the
    group is root-owned, so the signal goes through the privilege prefix;
    sudo relays it to its child.
    """
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return

    try:
        os.killpg(pgid, sig)
        return
    except ProcessLookupError:
        return
    except PermissionError:
        pass

    try:
        os.kill(pid, sig)
        return
    except ProcessLookupError:
        return
    except PermissionError:
        if not prefix:
            raise

    signame = signal.Signals(sig).name.replace("SIG", "", 1)
    subprocess.run(
        list(prefix) + ["kill", "-s", signame, str(pid)],
        check=False,
        capture_output=True,
        text=True,
    )


@dataclass(frozen=True)
class DaemonSpec:
    name: str
    argv: List[str]
    privileged: bool = True


@dataclass
class DaemonHandle:
    name: str
    pid: int
    cmd: List[str]
    started_ts: int
    proc: subprocess.Popen = field(repr=False)
    output_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_MAX_LINES), repr=False)
    exit_code: Optional[int] = None

    def tail(self) -> List[str]:
        return list(self.output_tail)


class ProcessSupervisor:
    """
    Starts, health-checks and stops the supervised daemons. Handles are
    returned to the caller; nothing is kept in module state.
    """

    def __init__(
        self,
        prefix: Optional[Sequence[str]] = None,
        grace_s: float = TERMINATE_GRACE_S,
        early_fail_window_s: float = 0.6,
    ):
        self.prefix = list(privilege_prefix() if prefix is None else prefix)
        self.grace_s = grace_s
        self.early_fail_window_s = early_fail_window_s

    def _build_env(self) -> Dict[str, str]:
        # daemon output lands in error details; keep it untranslated
        env = os.environ.copy()
        env["LC_ALL"] = "C"
        env["LANG"] = "C"
        return env

    def launch(self, spec: DaemonSpec) -> DaemonHandle:
        argv = (self.prefix if spec.privileged else []) + list(spec.argv)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                close_fds=True,
                env=self._build_env(),
                # own session/PGID so the whole tree can be signalled and the
                # daemon never reads from or writes to our terminal
                start_new_session=True,
            )
        except OSError as e:
            log.error("daemon_spawn_failed err=%s", e, extra={"daemon": spec.name})
            raise SpawnFailed(
                f"spawn_failed: {e}",
                step=f"launch_{spec.name}",
                resource=spec.name,
            ) from e

        handle = DaemonHandle(
            name=spec.name,
            pid=proc.pid,
            cmd=_redact_cmd(spec.argv),
            started_ts=int(time.time()),
            proc=proc,
        )
        assert proc.stdout is not None
        threading.Thread(
            target=_reader_thread,
            args=(proc.stdout, handle.output_tail, spec.name),
            name=f"{spec.name}-output",
            daemon=True,
        ).start()

        # Give daemons that reject their config a chance to exit visibly.
        deadline = time.time() + self.early_fail_window_s
        while time.time() < deadline:
            if proc.poll() is not None:
                break
            time.sleep(0.05)

        log.info(
            "daemon_launched pid=%s cmd=%s",
            handle.pid,
            " ".join(handle.cmd),
            extra={"daemon": spec.name},
        )
        return handle

    def is_alive(self, handle: Optional[DaemonHandle]) -> bool:
        if handle is None:
            return False
        rc = handle.proc.poll()
        if rc is not None:
            handle.exit_code = rc
            return False
        return True

    def terminate(self, handle: DaemonHandle, timeout_s: Optional[float] = None) -> Optional[int]:
        """
        SIGTERM, wait up to the grace period, then SIGKILL. Returns the exit
        code, or None if the process could not be reaped in time.
        """
        proc = handle.proc
        rc = proc.poll()
        if rc is not None:
            handle.exit_code = rc
            log.info("daemon_already_exited rc=%s", rc, extra={"daemon": handle.name})
            return rc

        grace = self.grace_s if timeout_s is None else timeout_s
        _kill_process_group(handle.pid, signal.SIGTERM, self.prefix)
        try:
            rc = proc.wait(timeout=grace)
            handle.exit_code = rc
            log.info("daemon_terminated rc=%s", rc, extra={"daemon": handle.name})
            return rc
        except subprocess.TimeoutExpired:
            log.warning(
                "daemon_term_timeout grace_s=%s escalating=SIGKILL",
                grace,
                extra={"daemon": handle.name},
            )

        _kill_process_group(handle.pid, signal.SIGKILL, self.prefix)
        try:
            rc = proc.wait(timeout=_KILL_WAIT_S)
        except subprocess.TimeoutExpired:
            log.error("daemon_kill_timeout pid=%s", handle.pid, extra={"daemon": handle.name})
            return None
        handle.exit_code = rc
        log.info("daemon_killed rc=%s", rc, extra={"daemon": handle.name})
        return rc
