import itertools
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pytest

from hotspotd import state as hstate
from hotspotd.cmd import CmdResult, CommandRunner
from hotspotd.config import HotspotConfig
from hotspotd.errors import SpawnFailed
from hotspotd.lifecycle import HotspotController
from hotspotd.tools import REQUIRED_TOOLS

FAKE_TOOLS = {name: name for name in REQUIRED_TOOLS}

IW_INFO_5G = (
    "Interface wlan0\n"
    "\tifindex 3\n"
    "\twdev 0x1\n"
    "\taddr 00:11:22:33:44:55\n"
    "\tssid HomeNet\n"
    "\ttype managed\n"
    "\twiphy 0\n"
    "\tchannel 36 (5180 MHz), width: 80 MHz, center1: 5210 MHz\n"
    "\ttxpower 22.00 dBm\n"
)

IW_INFO_2G = (
    "Interface wlan0\n"
    "\tifindex 3\n"
    "\ttype managed\n"
    "\tchannel 6 (2437 MHz), width: 20 MHz, center1: 2437 MHz\n"
)


class FakeHost(CommandRunner):
    """
    Interprets the commands the orchestrator issues and keeps the host state
    they would change: virtual interfaces, addresses, firewall rules, the
    forwarding sysctl and NetworkManager's view of the radio.
    """

    def __init__(self):
        super().__init__(prefix=[])
        self.calls: List[List[str]] = []
        self.events: List[tuple] = []
        self.sleeps: List[float] = []
        self.fail = set()

        self.devices = [("wlan0", "wifi", "connected"), ("lo", "loopback", "unmanaged")]
        self.active = {"wlan0": "HomeNet"}
        self.iw_info = {"wlan0": IW_INFO_5G}
        self.ifaces = set()
        self.addrs: Dict[str, List[str]] = {}
        self.links_up = set()
        self.unmanaged = set()
        self.rules = []
        self.iptables_append_budget: Optional[int] = None
        self.ip_forward = "0"

        self.nm_running = True
        self.resolved_active = False
        self.known = [("HomeNet", "802-11-wireless")]
        self.visible = [("HomeNet", 70)]
        self.activated: List[str] = []
        self.reachable = True
        self.reachable_after_up: Dict[str, bool] = {}
        self.stray_dnsmasq = False

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def run(self, cmd, *, privileged=False, timeout_s=None) -> CmdResult:
        argv = list(cmd)
        self.calls.append(argv)
        tool = os.path.basename(argv[0])
        handler = getattr(self, "_" + tool, None)
        if handler is None:
            return CmdResult(127, f"{tool}: not found", argv)
        rc, out = handler(argv[1:])
        return CmdResult(rc, out, argv)

    def commands(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if os.path.basename(c[0]) == tool]

    # iw

    def _iw(self, args):
        if args[:1] == ["dev"] and args[2:] == ["info"]:
            name = args[1]
            if name in self.ifaces:
                return 0, f"Interface {name}\n\ttype AP\n"
            if name in self.iw_info:
                return 0, self.iw_info[name]
            return 237, "command failed: No such device (-19)"
        if args[:1] == ["dev"] and args[2:4] == ["interface", "add"]:
            if "iw_add" in self.fail:
                return 1, "command failed: Device or resource busy (-16)"
            name = args[4]
            if name in self.ifaces:
                return 1, "command failed: Too many open files in system (-23)"
            self.ifaces.add(name)
            self.events.append(("iface_add", name))
            return 0, ""
        if args[:1] == ["dev"] and args[2:] == ["del"]:
            name = args[1]
            if "iw_del" in self.fail or name not in self.ifaces:
                return 237, "command failed: No such device (-19)"
            self.ifaces.discard(name)
            self.addrs.pop(name, None)
            self.links_up.discard(name)
            self.events.append(("iface_del", name))
            return 0, ""
        return 1, "unsupported iw call"

    # ip

    def _ip(self, args):
        if args[:2] == ["addr", "flush"]:
            self.addrs[args[3]] = []
            return 0, ""
        if args[:2] == ["addr", "add"]:
            ifname = args[4]
            if "ip_addr_add" in self.fail or ifname not in self.ifaces:
                return 2, "RTNETLINK answers: Cannot assign requested address"
            self.addrs.setdefault(ifname, []).append(args[2])
            return 0, ""
        if args[:2] == ["link", "set"]:
            ifname = args[2]
            if "ip_link" in self.fail or ifname not in self.ifaces:
                return 2, "RTNETLINK answers: Operation not possible due to RF-kill"
            self.links_up.add(ifname)
            return 0, ""
        if args[:3] == ["-4", "addr", "show"]:
            ifname = args[4]
            if ifname not in self.ifaces:
                return 1, f'Device "{ifname}" does not exist.'
            if "ip_addr_show" in self.fail:
                return 0, ""
            lines = [f"5: {ifname}: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500"]
            for cidr in self.addrs.get(ifname, []):
                lines.append(f"    inet {cidr} scope global {ifname}")
            return 0, "\n".join(lines)
        return 1, "unsupported ip call"

    # sysctl

    def _sysctl(self, args):
        if args[:1] == ["-n"]:
            return 0, self.ip_forward
        if args[:1] == ["-w"]:
            if "sysctl_w" in self.fail:
                return 255, "sysctl: permission denied on key"
            _key, value = args[1].split("=", 1)
            self.ip_forward = value
            self.events.append(("ip_forward", value))
            return 0, args[1].replace("=", " = ")
        return 1, ""

    # iptables

    def _iptables(self, args):
        if args[:1] == ["-t"]:
            table, verb, rest = args[1], args[2], args[3:]
        else:
            table, verb, rest = "filter", args[0], args[1:]
        key = (table, tuple(rest))
        if verb == "-C":
            return (0, "") if key in self.rules else (1, "iptables: Bad rule")
        if verb == "-A":
            if self.iptables_append_budget is not None:
                if self.iptables_append_budget <= 0:
                    return 4, "iptables: Resource temporarily unavailable."
                self.iptables_append_budget -= 1
            self.rules.append(key)
            self.events.append(("rule_add", key))
            return 0, ""
        if verb == "-D":
            if key not in self.rules:
                return 1, "iptables: Bad rule (does a matching rule exist in that chain?)."
            self.rules.remove(key)
            self.events.append(("rule_del", key))
            return 0, ""
        return 2, "unsupported iptables call"

    # nmcli

    def _nmcli(self, args):
        if args == ["-t", "-f", "DEVICE,TYPE,STATE", "device", "status"]:
            return 0, "\n".join(":".join(d) for d in self.devices)
        if args == ["-t", "-f", "NAME,DEVICE", "connection", "show", "--active"]:
            return 0, "\n".join(f"{name}:{dev}" for dev, name in self.active.items())
        if args == ["-t", "-f", "NAME,TYPE", "connection", "show"]:
            return 0, "\n".join(f"{n}:{t}" for n, t in self.known)
        if args == ["-t", "-f", "SSID,SIGNAL", "device", "wifi", "list"]:
            return 0, "\n".join(f"{s}:{sig}" for s, sig in self.visible)
        if args == ["-t", "-f", "RUNNING", "general"]:
            return 0, "running" if self.nm_running else "stopped"
        if args[:2] == ["device", "set"]:
            if "nm_unmanaged" in self.fail:
                return 10, "Error: Device not found."
            self.unmanaged.add(args[2])
            return 0, ""
        if args[:3] == ["connection", "up", "id"]:
            name = args[3]
            if "nm_up" in self.fail:
                return 4, "Error: Connection activation failed: Secrets were required"
            self.activated.append(name)
            if name in self.reachable_after_up:
                self.reachable = self.reachable_after_up[name]
            return 0, "Connection successfully activated"
        return 2, "unsupported nmcli call"

    # misc

    def _ping(self, args):
        host = args[-1]
        if self.reachable:
            return 0, (
                f"PING {host} (142.250.0.1) 56(84) bytes of data.\n"
                "--- ping statistics ---\n"
                "2 packets transmitted, 2 received, 0% packet loss, time 1001ms"
            )
        return 1, "2 packets transmitted, 0 received, 100% packet loss, time 1012ms"

    def _pkill(self, args):
        if "pkill" in self.fail:
            return 3, "pkill: fatal error"
        if self.stray_dnsmasq:
            self.stray_dnsmasq = False
            return 0, ""
        return 1, ""

    def _systemctl(self, args):
        if args == ["start", "NetworkManager"]:
            if "nm_start" in self.fail:
                return 1, "Job for NetworkManager.service failed."
            self.nm_running = True
            self.events.append(("nm_start",))
            return 0, ""
        return (0, "") if self.resolved_active else (3, "")


@dataclass
class FakeHandle:
    name: str
    pid: int
    cmd: List[str]
    alive: bool = True
    dead_checks: int = 0
    exit_code: Optional[int] = None
    output: List[str] = field(default_factory=list)

    def tail(self) -> List[str]:
        return list(self.output)


class FakeSupervisor:
    def __init__(self, events: List[tuple]):
        self.events = events
        self.handles: List[FakeHandle] = []
        self.dead_on_start = set()
        self.spawn_fail = set()
        self.dead_checks: Dict[str, int] = {}
        self.on_launch: Optional[Callable[[str], None]] = None
        self._pids = itertools.count(4100)

    def launch(self, spec):
        if self.on_launch is not None:
            self.on_launch(spec.name)
        if spec.name in self.spawn_fail:
            raise SpawnFailed("spawn_failed: [Errno 2] No such file", step=f"launch_{spec.name}", resource=spec.name)
        h = FakeHandle(
            name=spec.name,
            pid=next(self._pids),
            cmd=list(spec.argv),
            alive=spec.name not in self.dead_on_start,
            dead_checks=self.dead_checks.get(spec.name, 0),
        )
        if not h.alive:
            h.exit_code = 1
            h.output.append(f"{spec.name}: could not bind")
        self.handles.append(h)
        self.events.append(("launch", spec.name))
        return h

    def is_alive(self, handle) -> bool:
        if handle is None or not handle.alive:
            return False
        if handle.dead_checks > 0:
            handle.dead_checks -= 1
            return False
        return True

    def terminate(self, handle, timeout_s=None):
        self.events.append(("terminate", handle.name))
        handle.alive = False
        handle.exit_code = 0
        return 0

    def handle(self, name: str) -> FakeHandle:
        return [h for h in self.handles if h.name == name][-1]


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    monkeypatch.setattr(hstate, "STATE_PATH", tmp_path / "state" / "state.json")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def supervisor(host):
    return FakeSupervisor(host.events)


@pytest.fixture
def hotspot_config():
    return HotspotConfig(ssid="VRNet", passphrase="supersecret", interval_s=10)


@pytest.fixture
def make_controller(host, supervisor, hotspot_config, tmp_path):
    created = []

    def _make(**overrides):
        params = dict(
            runner=host,
            supervisor=supervisor,
            tool_locator=lambda: dict(FAKE_TOOLS),
            config_loader=lambda: hotspot_config,
            hostapd_conf_path=tmp_path / "run" / "hostapd.conf",
            dnsmasq_conf_path=tmp_path / "run" / "dnsmasq.conf",
            probe_host="probe.test",
            watchdog_interval_s=3600,
            sleep=host.sleep,
        )
        params.update(overrides)
        ctl = HotspotController(**params)
        created.append(ctl)
        return ctl

    yield _make

    for ctl in created:
        ctl.stop(correlation_id="test_cleanup")
