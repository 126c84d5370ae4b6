import logging
import os
import re
from typing import Dict, Optional

from hotspotd.cmd import CommandRunner

log = logging.getLogger("hotspotd.connectivity")

DEFAULT_PROBE_HOST = "google.com"
PROBE_COUNT = 2
PROBE_TIMEOUT_S = 2

_SUMMARY_RE = re.compile(
    r"(\d+)\s+packets transmitted,\s+(\d+)\s+(?:packets\s+)?received(?:,.*?(\d+(?:\.\d+)?)%\s+packet loss)?"
)


def probe_host() -> str:
    return (os.environ.get("HOTSPOTD_PROBE_HOST") or "").strip() or DEFAULT_PROBE_HOST


def parse_ping_summary(text: str) -> Dict[str, Optional[float]]:
    sent = None
    received = None
    loss = None
    for line in text.splitlines():
        m = _SUMMARY_RE.search(line)
        if m:
            sent = int(m.group(1))
            received = int(m.group(2))
            if m.group(3) is not None:
                loss = float(m.group(3))
    return {"sent": sent, "received": received, "loss": loss}


class ReachabilityProbe:
    """
    A few ICMP echoes to a stable external host. DNS resolution of the host
    is part of the check, so a broken resolver counts as unreachable.
    """

    def __init__(
        self,
        runner: CommandRunner,
        ping: str = "ping",
        host: Optional[str] = None,
        count: int = PROBE_COUNT,
        timeout_s: int = PROBE_TIMEOUT_S,
    ):
        self.runner = runner
        self.ping = ping
        self.host = host or probe_host()
        self.count = count
        self.timeout_s = timeout_s

    def __call__(self) -> bool:
        return self.check()

    def check(self) -> bool:
        res = self.runner.run(
            [self.ping, "-c", str(self.count), "-W", str(self.timeout_s), self.host],
            timeout_s=float(self.count * self.timeout_s + 5),
        )
        summary = parse_ping_summary(res.out)
        log.debug(
            "reachability host=%s rc=%s sent=%s received=%s loss=%s",
            self.host,
            res.rc,
            summary["sent"],
            summary["received"],
            summary["loss"],
        )
        return res.ok
