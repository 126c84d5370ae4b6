"""
NetworkManager (nmcli) queries and commands.

All queries use terse mode (-t), where ':' separates fields and literal ':'
or '\\' inside a value are backslash-escaped.
"""

from typing import Dict, List, Optional, Tuple

from hotspotd.cmd import CmdResult, CommandRunner

_WIFI_CONNECTION_TYPES = ("802-11-wireless", "wifi")


def split_terse(line: str) -> List[str]:
    fields: List[str] = []
    cur: List[str] = []
    escaped = False
    for ch in line:
        if escaped:
            cur.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ":":
            fields.append("".join(cur))
            cur = []
        else:
            cur.append(ch)
    fields.append("".join(cur))
    return fields


def _terse_rows(text: str, min_fields: int) -> List[List[str]]:
    rows: List[List[str]] = []
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        if not line.strip():
            continue
        fields = split_terse(line)
        if len(fields) < min_fields:
            continue
        rows.append(fields)
    return rows


def parse_device_status(text: str) -> List[Dict[str, str]]:
    return [
        {"device": f[0], "type": f[1], "state": f[2]}
        for f in _terse_rows(text, 3)
    ]


def parse_active_connections(text: str) -> List[Tuple[str, str]]:
    return [(f[0], f[1]) for f in _terse_rows(text, 2)]


def parse_known_wifi(text: str) -> List[str]:
    names: List[str] = []
    for f in _terse_rows(text, 2):
        name, ctype = f[0], f[1]
        if not name or ctype not in _WIFI_CONNECTION_TYPES:
            continue
        if name not in names:
            names.append(name)
    return names


def parse_wifi_list(text: str) -> List[Tuple[str, int]]:
    out: List[Tuple[str, int]] = []
    for f in _terse_rows(text, 2):
        ssid = f[0]
        if not ssid:
            # hidden network
            continue
        try:
            signal = int(f[1].strip())
        except ValueError:
            continue
        out.append((ssid, signal))
    return out


class NetworkManagerCli:
    def __init__(self, runner: CommandRunner, nmcli: str = "nmcli"):
        self.runner = runner
        self.nmcli = nmcli

    def device_status(self) -> List[Dict[str, str]]:
        res = self.runner.run([self.nmcli, "-t", "-f", "DEVICE,TYPE,STATE", "device", "status"])
        return parse_device_status(res.out) if res.ok else []

    def active_connection_for(self, device: str) -> Optional[str]:
        res = self.runner.run(
            [self.nmcli, "-t", "-f", "NAME,DEVICE", "connection", "show", "--active"]
        )
        if not res.ok:
            return None
        for name, dev in parse_active_connections(res.out):
            if dev == device and name:
                return name
        return None

    def known_wifi_networks(self) -> List[str]:
        res = self.runner.run([self.nmcli, "-t", "-f", "NAME,TYPE", "connection", "show"])
        return parse_known_wifi(res.out) if res.ok else []

    def visible_networks(self) -> List[Tuple[str, int]]:
        res = self.runner.run([self.nmcli, "-t", "-f", "SSID,SIGNAL", "device", "wifi", "list"])
        return parse_wifi_list(res.out) if res.ok else []

    def connection_up(self, name: str) -> CmdResult:
        return self.runner.run(
            [self.nmcli, "connection", "up", "id", name],
            privileged=True,
            timeout_s=45.0,
        )

    def set_unmanaged(self, device: str) -> CmdResult:
        return self.runner.run([self.nmcli, "device", "set", device, "managed", "no"], privileged=True)
