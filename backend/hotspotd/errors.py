from typing import Any, Dict, Optional

ERROR_REMEDIATIONS: Dict[str, str] = {
    "missing_tool": (
        "Install the missing programs (iw, iproute2, iptables, hostapd, dnsmasq, "
        "NetworkManager, procps, iputils) or point HOTSPOTD_<TOOL> at them."
    ),
    "no_uplink": (
        "Connect the wireless adapter to an upstream network first; "
        "check `nmcli device status` and that NetworkManager is running "
        "(`systemctl start NetworkManager`)."
    ),
    "parse_failure": (
        "`iw dev <iface> info` did not report a channel; update iw or the driver."
    ),
    "config_invalid": (
        "Run `hotspotd configure`: SSID must be 1-32 bytes and the passphrase 8-63."
    ),
    "interface_op_failed": (
        "The adapter refused the virtual AP interface; it must support concurrent "
        "managed+AP interfaces (`iw list`, valid interface combinations)."
    ),
    "command_failed": (
        "A privileged command failed. Run as root or allow passwordless sudo."
    ),
    "spawn_failed": (
        "The daemon could not be executed; check the binary path and permissions."
    ),
    "daemon_not_alive": (
        "The daemon exited right after start; check its output tail and "
        "for conflicts on port 53/67 (systemd-resolved, another dnsmasq)."
    ),
}


class HotspotError(RuntimeError):
    """Base class for failures of a lifecycle step.

    `step` names the lifecycle step that failed and `resource` the interface,
    daemon, file or rule it was acting on.
    """

    code = "hotspot_error"

    def __init__(
        self,
        message: str = "",
        *,
        step: Optional[str] = None,
        resource: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.step = step
        self.resource = resource
        self.detail = detail
        super().__init__(message or self.code)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.step:
            parts.append(f"step={self.step}")
        if self.resource:
            parts.append(f"resource={self.resource}")
        if self.detail:
            parts.append(f"detail={self.detail}")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return build_error_detail(
            self.code,
            {
                "message": super().__str__(),
                "step": self.step,
                "resource": self.resource,
                "detail": self.detail,
            },
        )


class MissingTool(HotspotError):
    code = "missing_tool"


class NoUplink(HotspotError):
    code = "no_uplink"


class ParseFailure(HotspotError):
    code = "parse_failure"


class ConfigError(HotspotError):
    code = "config_invalid"


class InterfaceOpFailed(HotspotError):
    code = "interface_op_failed"


class CommandFailed(HotspotError):
    code = "command_failed"


class SpawnFailed(HotspotError):
    code = "spawn_failed"


class DaemonNotAlive(HotspotError):
    code = "daemon_not_alive"


class ShutdownRequested(BaseException):
    """Raised from the signal handler into an in-flight start transition."""

    def __init__(self, signame: str):
        self.signame = signame
        super().__init__(signame)


def build_error_detail(code: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "code": code,
        "remediation": ERROR_REMEDIATIONS.get(code, "Check logs for details."),
        "context": context or {},
    }
