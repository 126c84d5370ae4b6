import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from hotspotd.cmd import CommandRunner
from hotspotd.errors import NoUplink, ParseFailure
from hotspotd.nm import NetworkManagerCli

log = logging.getLogger("hotspotd.link_probe")

HW_MODE_2G = "g"
HW_MODE_5G = "a"

DEFAULT_CHANNEL = {HW_MODE_2G: 6, HW_MODE_5G: 36}
CHANNEL_RANGE = {HW_MODE_2G: (1, 14), HW_MODE_5G: (36, 165)}

_CHANNEL_NUM_RE = re.compile(r"channel\s+(\d+)", re.IGNORECASE)
_FREQ_RE = re.compile(r"\((\d+(?:\.\d+)?)\s*MHz\)", re.IGNORECASE)


@dataclass(frozen=True)
class UplinkSnapshot:
    ifname: str
    connection: str
    channel: int
    freq_mhz: int
    hw_mode: str
    clamped: bool = False

    @property
    def band(self) -> str:
        return "2.4ghz" if self.hw_mode == HW_MODE_2G else "5ghz"


def hw_mode_for_freq(freq_mhz: int) -> str:
    return HW_MODE_2G if freq_mhz < 5000 else HW_MODE_5G


def clamp_channel(channel: int, hw_mode: str) -> int:
    lo, hi = CHANNEL_RANGE[hw_mode]
    if lo <= channel <= hi:
        return channel
    return DEFAULT_CHANNEL[hw_mode]


def freq_from_channel(channel: int) -> int:
    if channel == 14:
        return 2484
    if 1 <= channel <= 13:
        return 2407 + 5 * channel
    return 5000 + 5 * channel


def parse_iw_info_channel(text: str) -> Tuple[int, int]:
    """
    Return (channel, freq_mhz) from `iw dev <iface> info` output.

    The channel line is found by substring so differently indented or
    reordered driver output still parses, e.g.
        channel 36 (5180 MHz), width: 80 MHz, center1: 5210 MHz
    """
    for raw in text.splitlines():
        line = raw.strip()
        if "channel" not in line.lower():
            continue
        m_ch = _CHANNEL_NUM_RE.search(line)
        if not m_ch:
            continue
        channel = int(m_ch.group(1))
        m_freq = _FREQ_RE.search(line)
        if m_freq:
            freq = int(float(m_freq.group(1)))
        else:
            freq = freq_from_channel(channel)
        return channel, freq
    raise ParseFailure("iw_channel_line_not_found", step="probe_uplink")


class LinkProber:
    def __init__(self, runner: CommandRunner, iw: str = "iw", nmcli: str = "nmcli"):
        self.runner = runner
        self.iw = iw
        self.nm = NetworkManagerCli(runner, nmcli)

    def _connected_wifi_device(self, wanted: Optional[str]) -> str:
        for dev in self.nm.device_status():
            if dev["type"] != "wifi" or dev["state"] != "connected":
                continue
            if wanted and dev["device"] != wanted:
                continue
            return dev["device"]
        raise NoUplink(
            "no_connected_wifi_device",
            step="probe_uplink",
            resource=wanted,
        )

    def probe(self, uplink_interface: Optional[str] = None) -> UplinkSnapshot:
        ifname = self._connected_wifi_device(uplink_interface)

        connection = self.nm.active_connection_for(ifname)
        if not connection:
            raise NoUplink("no_active_connection", step="probe_uplink", resource=ifname)

        res = self.runner.run([self.iw, "dev", ifname, "info"])
        if not res.ok:
            raise ParseFailure(
                f"iw_info_failed rc={res.rc}",
                step="probe_uplink",
                resource=ifname,
                detail=res.out or None,
            )
        try:
            channel, freq = parse_iw_info_channel(res.out)
        except ParseFailure as exc:
            exc.resource = ifname
            raise

        hw_mode = hw_mode_for_freq(freq)
        safe_channel = clamp_channel(channel, hw_mode)
        clamped = safe_channel != channel
        if clamped:
            log.warning(
                "uplink_channel_clamped iface=%s channel=%s freq=%s hw_mode=%s used=%s",
                ifname,
                channel,
                freq,
                hw_mode,
                safe_channel,
            )

        snap = UplinkSnapshot(
            ifname=ifname,
            connection=connection,
            channel=safe_channel,
            freq_mhz=freq,
            hw_mode=hw_mode,
            clamped=clamped,
        )
        log.info(
            "uplink_probed iface=%s connection=%s channel=%s freq=%s hw_mode=%s",
            snap.ifname,
            snap.connection,
            snap.channel,
            snap.freq_mhz,
            snap.hw_mode,
        )
        return snap
