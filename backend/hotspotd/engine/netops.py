import re
from typing import Optional

from hotspotd.cmd import CmdResult, CommandRunner
from hotspotd.errors import CommandFailed, InterfaceOpFailed
from hotspotd.nm import NetworkManagerCli

_INET_RE = re.compile(r"\binet\s+(\d+\.\d+\.\d+\.\d+)(?:/(\d+))?")

IP_FORWARD_KEY = "net.ipv4.ip_forward"


def parse_inet_addrs(text: str):
    return [m.group(1) for m in _INET_RE.finditer(text)]


class HostNet:
    """
    Privileged host networking steps for the AP side: the virtual interface,
    its address, and the forwarding sysctl.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        iw: str = "iw",
        ip: str = "ip",
        sysctl: str = "sysctl",
        nmcli: str = "nmcli",
    ):
        self.runner = runner
        self.iw = iw
        self.ip = ip
        self.sysctl = sysctl
        self.nm = NetworkManagerCli(runner, nmcli)

    # virtual interface

    def iface_exists(self, ifname: str) -> bool:
        return self.runner.run([self.iw, "dev", ifname, "info"], privileged=True).ok

    def delete_iface(self, ifname: str) -> None:
        self.runner.check(
            [self.iw, "dev", ifname, "del"],
            step="delete_ap_iface",
            resource=ifname,
            error_cls=InterfaceOpFailed,
        )

    def create_ap_iface(self, parent_if: str, ifname: str) -> None:
        self.runner.check(
            [self.iw, "dev", parent_if, "interface", "add", ifname, "type", "__ap"],
            step="create_ap_iface",
            resource=ifname,
            error_cls=InterfaceOpFailed,
        )

    def set_unmanaged(self, ifname: str) -> None:
        res = self.nm.set_unmanaged(ifname)
        if not res.ok:
            raise InterfaceOpFailed(
                f"cmd_failed rc={res.rc}",
                step="set_unmanaged",
                resource=ifname,
                detail=res.out or None,
            )

    # addressing

    def assign_address(self, ifname: str, cidr: str) -> None:
        # stale addresses from an earlier run would make `addr add` fail
        self.runner.run([self.ip, "addr", "flush", "dev", ifname], privileged=True)
        self.runner.check(
            [self.ip, "addr", "add", cidr, "dev", ifname],
            step="assign_address",
            resource=ifname,
        )

    def link_up(self, ifname: str) -> None:
        self.runner.check(
            [self.ip, "link", "set", ifname, "up"],
            step="link_up",
            resource=ifname,
        )

    def verify_address(self, ifname: str, address: str) -> None:
        res = self.runner.run([self.ip, "-4", "addr", "show", "dev", ifname])
        addrs = parse_inet_addrs(res.out) if res.ok else []
        if address not in addrs:
            raise CommandFailed(
                "address_not_assigned",
                step="verify_address",
                resource=ifname,
                detail=f"expected={address} found={','.join(addrs) or 'none'}",
            )

    # forwarding

    def read_ip_forward(self) -> Optional[str]:
        res = self.runner.run([self.sysctl, "-n", IP_FORWARD_KEY])
        if not res.ok:
            return None
        val = res.out.strip()
        return val if val in ("0", "1") else None

    def set_ip_forward(self, value: str) -> CmdResult:
        return self.runner.check(
            [self.sysctl, "-w", f"{IP_FORWARD_KEY}={value}"],
            step="ip_forward",
            resource=IP_FORWARD_KEY,
        )
