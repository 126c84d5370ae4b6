import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from hotspotd.errors import ConfigError

CONFIG_PATH = Path(os.environ.get("HOTSPOTD_CONFIG") or "/var/lib/hotspotd/hotspot.conf")

RUN_DIR = Path(os.environ.get("HOTSPOTD_RUN_DIR") or "/run/hotspotd")
HOSTAPD_CONF_PATH = RUN_DIR / "hostapd.conf"
DNSMASQ_CONF_PATH = RUN_DIR / "dnsmasq.conf"

# Reserved AP side of the host. Only the lifecycle controller creates,
# rewrites or deletes these.
AP_IFNAME = "ap0"
AP_ADDRESS = "192.168.4.1"
AP_PREFIX_LEN = 24
DHCP_START = "192.168.4.2"
DHCP_END = "192.168.4.100"
DHCP_LEASE = "12h"

DEFAULT_INTERVAL_S = 10
SSID_MAX_BYTES = 32
PASSPHRASE_MIN_BYTES = 8
PASSPHRASE_MAX_BYTES = 63


@dataclass(frozen=True)
class HotspotConfig:
    ssid: str
    passphrase: str
    interval_s: int = DEFAULT_INTERVAL_S

    def validate(self) -> "HotspotConfig":
        ssid_len = len(self.ssid.encode("utf-8"))
        if not 1 <= ssid_len <= SSID_MAX_BYTES:
            raise ConfigError(
                "invalid_ssid_length",
                step="load_config",
                detail=f"bytes={ssid_len} allowed=1-{SSID_MAX_BYTES}",
            )
        pass_len = len(self.passphrase.encode("utf-8"))
        if not PASSPHRASE_MIN_BYTES <= pass_len <= PASSPHRASE_MAX_BYTES:
            raise ConfigError(
                "invalid_passphrase_length",
                step="load_config",
                detail=f"bytes={pass_len} allowed={PASSPHRASE_MIN_BYTES}-{PASSPHRASE_MAX_BYTES}",
            )
        if "\n" in self.ssid or "\n" in self.passphrase:
            raise ConfigError("newline_in_value", step="load_config")
        if not isinstance(self.interval_s, int) or self.interval_s <= 0:
            raise ConfigError(
                "invalid_interval",
                step="load_config",
                detail=f"interval_s={self.interval_s!r}",
            )
        return self


def uplink_override() -> Optional[str]:
    return (os.environ.get("HOTSPOTD_UPLINK") or "").strip() or None


def ap_cidr() -> str:
    return f"{AP_ADDRESS}/{AP_PREFIX_LEN}"


def parse_interval(raw: Optional[str]) -> int:
    """Non-numeric or non-positive values fall back to the default."""
    try:
        val = int((raw or "").strip())
    except ValueError:
        return DEFAULT_INTERVAL_S
    return val if val > 0 else DEFAULT_INTERVAL_S


def parse_config_text(text: str) -> HotspotConfig:
    lines: List[str] = [ln.rstrip("\r") for ln in text.split("\n")]
    if len(lines) < 2 or not lines[0]:
        raise ConfigError("config_incomplete", step="load_config", resource=str(CONFIG_PATH))
    interval = parse_interval(lines[2]) if len(lines) > 2 else DEFAULT_INTERVAL_S
    return HotspotConfig(ssid=lines[0], passphrase=lines[1], interval_s=interval).validate()


def render_config_text(cfg: HotspotConfig) -> str:
    return f"{cfg.ssid}\n{cfg.passphrase}\n{cfg.interval_s}\n"


def config_exists() -> bool:
    return CONFIG_PATH.exists()


def load_config() -> HotspotConfig:
    """
    Read the flat config: SSID, passphrase, optional check interval, one per
    line.
    """
    try:
        text = CONFIG_PATH.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError("config_missing", step="load_config", resource=str(CONFIG_PATH)) from exc
    except OSError as exc:
        raise ConfigError(
            "config_unreadable",
            step="load_config",
            resource=str(CONFIG_PATH),
            detail=str(exc),
        ) from exc
    return parse_config_text(text)


def _write_atomic(path: Path, tmp: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass
    os.replace(tmp, path)


def write_config(cfg: HotspotConfig) -> HotspotConfig:
    cfg.validate()
    tmp = CONFIG_PATH.with_name(CONFIG_PATH.name + ".tmp")
    _write_atomic(CONFIG_PATH, tmp, render_config_text(cfg))
    # passphrase on disk: keep it root-only
    os.chmod(CONFIG_PATH, 0o600)
    return cfg
