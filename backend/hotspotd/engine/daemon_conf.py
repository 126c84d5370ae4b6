import os
from pathlib import Path
from typing import List

from hotspotd.link_probe import HW_MODE_2G, HW_MODE_5G


def render_hostapd_conf(
    *,
    ifname: str,
    ssid: str,
    passphrase: str,
    hw_mode: str,
    channel: int,
) -> str:
    """
    hostapd parses this file line by line as key=value; no quoting, no
    trailing spaces.
    """
    if hw_mode not in (HW_MODE_2G, HW_MODE_5G):
        raise ValueError(f"invalid_hw_mode:{hw_mode}")

    lines = [
        f"interface={ifname}",
        "driver=nl80211",
        f"ssid={ssid}",
        f"hw_mode={hw_mode}",
        f"channel={int(channel)}",
        "wpa=2",
        f"wpa_passphrase={passphrase}",
        "wpa_key_mgmt=WPA-PSK",
        "wpa_pairwise=CCMP",
        "rsn_pairwise=CCMP",
    ]
    return "\n".join(lines) + "\n"


def render_dnsmasq_conf(
    *,
    ifname: str,
    listen_ip: str,
    dhcp_start: str,
    dhcp_end: str,
    lease: str = "12h",
) -> str:
    lines: List[str] = [
        f"interface={ifname}",
        "bind-interfaces",
        "except-interface=lo",
        f"listen-address={listen_ip}",
        f"dhcp-range={dhcp_start},{dhcp_end},{lease}",
        f"dhcp-option=option:router,{listen_ip}",
        f"dhcp-option=option:dns-server,{listen_ip}",
        "domain-needed",
        "bogus-priv",
        "log-facility=-",
    ]
    return "\n".join(lines) + "\n"


def write_private(path: Path, text: str) -> None:
    """
    Write with mode 0600 from the start: the hostapd file carries the
    passphrase.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)
    os.chmod(path, 0o600)
