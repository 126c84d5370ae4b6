import logging
import os
from typing import List, Optional

from hotspotd.cmd import CommandRunner
from hotspotd.errors import NoUplink

log = logging.getLogger("hotspotd.preflight")

NM_START_TIMEOUT_S = 30.0


def _check_systemd_resolved(runner: CommandRunner, systemctl: Optional[str]) -> List[str]:
    # resolved's stub listener holds port 53 on some hosts, which dnsmasq
    # also wants
    if not systemctl:
        return []
    res = runner.run([systemctl, "is-active", "--quiet", "systemd-resolved"])
    return ["systemd_resolved_active_port53_conflict_possible"] if res.ok else []


def _nm_running(runner: CommandRunner, nmcli: str) -> bool:
    res = runner.run([nmcli, "-t", "-f", "RUNNING", "general"])
    return res.ok and res.out.strip() == "running"


def ensure_network_manager(runner: CommandRunner, *, nmcli: str, systemctl: Optional[str]) -> None:
    """Start NetworkManager through systemd if it is down; raise NoUplink if it stays down."""
    if _nm_running(runner, nmcli):
        return
    if systemctl:
        log.warning("network_manager_not_running starting", extra={"step": "preflight"})
        res = runner.run(
            [systemctl, "start", "NetworkManager"],
            privileged=True,
            timeout_s=NM_START_TIMEOUT_S,
        )
        if res.ok and _nm_running(runner, nmcli):
            log.info("network_manager_started", extra={"step": "preflight"})
            return
        detail = res.out or None
    else:
        detail = "systemctl not found"
    raise NoUplink(
        "network_manager_not_running",
        step="preflight",
        resource="NetworkManager",
        detail=detail,
    )


def _check_privileges(prefix: List[str]) -> List[str]:
    if os.geteuid() == 0:
        return []
    return ["not_root_using_sudo"] if prefix else ["not_root_no_sudo"]


def run_preflight(runner: CommandRunner, *, nmcli: str, systemctl: Optional[str]) -> List[str]:
    """
    Host checks before any mutation. NetworkManager must be up (raises
    NoUplink); every other finding is a warning token.
    """
    warnings: List[str] = []
    warnings.extend(_check_privileges(runner.prefix))
    ensure_network_manager(runner, nmcli=nmcli, systemctl=systemctl)
    warnings.extend(_check_systemd_resolved(runner, systemctl))
    for w in warnings:
        log.warning("preflight_warning %s", w, extra={"step": "preflight"})
    return warnings
