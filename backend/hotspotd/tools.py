import logging
import os
import shutil
from typing import Dict, Iterable, Optional

from hotspotd.errors import MissingTool

log = logging.getLogger("hotspotd.tools")

REQUIRED_TOOLS = (
    "iw",
    "ip",
    "iptables",
    "sysctl",
    "hostapd",
    "dnsmasq",
    "nmcli",
    "ping",
    "pkill",
)

# Used when present; their absence only skips a preflight check.
OPTIONAL_TOOLS = ("systemctl",)

# Privileged tools often live in sbin dirs that are not on a user's PATH.
_SBIN_DIRS = ("/usr/local/sbin", "/usr/sbin", "/sbin")


def _env_key(name: str) -> str:
    return "HOTSPOTD_" + name.upper().replace("-", "_")


def _is_exe(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_tool(name: str) -> Optional[str]:
    override = (os.environ.get(_env_key(name)) or "").strip()
    if override and _is_exe(override):
        return override
    p = shutil.which(name)
    if p:
        return p
    for d in _SBIN_DIRS:
        cand = os.path.join(d, name)
        if _is_exe(cand):
            return cand
    return None


def resolve_tools(names: Iterable[str] = REQUIRED_TOOLS) -> Dict[str, str]:
    """
    Resolve every tool to an absolute path.
    Raises MissingTool naming all absent tools at once.
    """
    found: Dict[str, str] = {}
    missing = []
    for name in names:
        path = resolve_tool(name)
        if path:
            found[name] = path
        else:
            missing.append(name)

    if missing:
        raise MissingTool(
            "required_tools_missing",
            step="validate_tools",
            resource=",".join(missing),
        )

    for name, path in found.items():
        log.debug("tool_found name=%s path=%s", name, path)
    return found


def locate_tools() -> Dict[str, str]:
    """Required tools plus whichever optional ones are installed."""
    found = resolve_tools(REQUIRED_TOOLS)
    for name in OPTIONAL_TOOLS:
        path = resolve_tool(name)
        if path:
            found[name] = path
    return found
