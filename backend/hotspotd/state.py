import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict

STATE_DIR = Path(os.environ.get("HOTSPOTD_STATE_DIR") or "/run/hotspotd")
STATE_PATH = STATE_DIR / "state.json"

# Guards load-modify-save cycles between the control thread and the watchdog.
_LOCK = threading.Lock()

SCHEMA_VERSION = 1

DEFAULT_STATE: Dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,

    "orchestrator_pid": None,
    "phase": "idle",             # idle | validating | interface_up | daemons_starting | steady | stopping | failed
    "ap_interface": None,
    "uplink": {
        "ifname": None,
        "connection": None,
        "channel": None,
        "freq_mhz": None,
        "hw_mode": None,
        "clamped": False,
    },
    "ssid": None,

    "daemons": {
        "hostapd_pid": None,
        "dnsmasq_pid": None,
    },

    "connectivity": {
        "last_check_ts": None,
        "reachable": None,
        "last_resolve": None,
        "last_network": None,
    },

    "last_error": None,
    "warnings": [],
    "last_op": None,
    "last_op_ts": None,
    "last_correlation_id": None,
}

_NESTED_KEYS = ("uplink", "daemons", "connectivity")


def _deepcopy_default() -> Dict[str, Any]:
    # JSON roundtrip is fine here; state is small.
    return json.loads(json.dumps(DEFAULT_STATE))


def _merge(state: Dict[str, Any], updates: Dict[str, Any]) -> None:
    for k, v in updates.items():
        if k in _NESTED_KEYS and isinstance(v, dict) and isinstance(state.get(k), dict):
            state[k].update(v)
        else:
            state[k] = v


def load_state() -> Dict[str, Any]:
    """
    Load state from disk and merge into defaults, so new fields roll forward.
    Never throws; returns a valid state dict.
    """
    if not STATE_PATH.exists():
        return _deepcopy_default()

    try:
        data = json.loads(STATE_PATH.read_text())
    except (OSError, ValueError):
        return _deepcopy_default()

    merged = _deepcopy_default()
    if isinstance(data, dict):
        _merge(merged, data)
    merged.setdefault("schema_version", SCHEMA_VERSION)
    return merged


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass
    os.replace(tmp, path)


def save_state(state: Dict[str, Any]) -> None:
    state.setdefault("schema_version", SCHEMA_VERSION)
    _write_atomic(STATE_PATH, json.dumps(state, indent=2, sort_keys=True))
    # Runtime state is non-secret; 0644 is reasonable.
    try:
        os.chmod(STATE_PATH, 0o644)
    except OSError:
        pass


def update_state(**kwargs) -> Dict[str, Any]:
    """
    Load-modify-save under a lock.
    """
    with _LOCK:
        state = load_state()
        _merge(state, kwargs)
        state["last_op_ts"] = int(time.time())
        save_state(state)
        return state


def reset_state(**kwargs) -> Dict[str, Any]:
    """Back to defaults, keeping only the given fields."""
    with _LOCK:
        state = _deepcopy_default()
        _merge(state, kwargs)
        state["last_op_ts"] = int(time.time())
        save_state(state)
        return state
