import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence, Type

from hotspotd.errors import CommandFailed, HotspotError

log = logging.getLogger("hotspotd.cmd")

_CMD_TIMEOUT_S = 10.0


def privilege_prefix() -> List[str]:
    """
    Empty when already root; otherwise non-interactive sudo so a missing
    credential fails fast instead of prompting on a detached terminal.
    """
    try:
        if os.geteuid() == 0:
            return []
    except AttributeError:
        return []
    sudo = shutil.which("sudo") or "/usr/bin/sudo"
    return [sudo, "-n"]


@dataclass(frozen=True)
class CmdResult:
    rc: int
    out: str
    cmd: List[str]

    @property
    def ok(self) -> bool:
        return self.rc == 0


class CommandRunner:
    """
    One-shot command execution. run() never raises: timeouts map to rc 124
    and spawn errors to rc 127. check() turns a non-zero exit into an error.
    """

    def __init__(self, prefix: Optional[Sequence[str]] = None, timeout_s: float = _CMD_TIMEOUT_S):
        self.prefix = list(privilege_prefix() if prefix is None else prefix)
        self.timeout_s = timeout_s

    def run(
        self,
        cmd: Sequence[str],
        *,
        privileged: bool = False,
        timeout_s: Optional[float] = None,
    ) -> CmdResult:
        argv = (self.prefix if privileged else []) + list(cmd)
        try:
            p = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout_s or self.timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            out = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
            err = (exc.stderr or "") if isinstance(exc.stderr, str) else ""
            return CmdResult(124, (out + "\n" + err).strip(), list(cmd))
        except OSError as exc:
            return CmdResult(127, f"{type(exc).__name__}: {exc}", list(cmd))

        out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
        return CmdResult(p.returncode, out.strip(), list(cmd))

    def check(
        self,
        cmd: Sequence[str],
        *,
        step: str,
        resource: Optional[str] = None,
        privileged: bool = True,
        error_cls: Type[HotspotError] = CommandFailed,
        timeout_s: Optional[float] = None,
    ) -> CmdResult:
        res = self.run(cmd, privileged=privileged, timeout_s=timeout_s)
        if not res.ok:
            log.error(
                "cmd_failed rc=%s cmd=%s out=%s",
                res.rc,
                " ".join(res.cmd),
                res.out,
                extra={"step": step, "resource": resource},
            )
            raise error_cls(
                f"cmd_failed rc={res.rc}",
                step=step,
                resource=resource,
                detail=res.out or None,
            )
        return res
