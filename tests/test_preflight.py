import pytest

from hotspotd import preflight
from hotspotd.errors import NoUplink


def test_clean_host_as_root(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 0)

    assert preflight.run_preflight(host, nmcli="nmcli", systemctl="systemctl") == []
    assert host.commands("systemctl") == [["systemctl", "is-active", "--quiet", "systemd-resolved"]]


def test_findings_are_warnings(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 1000)
    host.resolved_active = True

    warnings = preflight.run_preflight(host, nmcli="nmcli", systemctl="systemctl")

    assert warnings == [
        "not_root_no_sudo",
        "systemd_resolved_active_port53_conflict_possible",
    ]


def test_sudo_prefix_noted(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 1000)
    host.prefix = ["/usr/bin/sudo", "-n"]

    assert preflight.run_preflight(host, nmcli="nmcli", systemctl=None) == ["not_root_using_sudo"]


def test_stopped_network_manager_is_started(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 0)
    host.nm_running = False

    assert preflight.run_preflight(host, nmcli="nmcli", systemctl="systemctl") == []
    assert ["systemctl", "start", "NetworkManager"] in host.calls
    assert host.nm_running is True
    assert ("nm_start",) in host.events


def test_network_manager_start_failure_raises(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 0)
    host.nm_running = False
    host.fail.add("nm_start")

    with pytest.raises(NoUplink) as exc:
        preflight.run_preflight(host, nmcli="nmcli", systemctl="systemctl")

    assert exc.value.args[0] == "network_manager_not_running"
    assert exc.value.step == "preflight"
    assert exc.value.resource == "NetworkManager"
    assert "failed" in exc.value.detail


def test_network_manager_down_without_systemctl_raises(host, monkeypatch):
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 0)
    host.nm_running = False

    with pytest.raises(NoUplink) as exc:
        preflight.run_preflight(host, nmcli="nmcli", systemctl=None)

    assert exc.value.detail == "systemctl not found"
    assert host.commands("systemctl") == []
