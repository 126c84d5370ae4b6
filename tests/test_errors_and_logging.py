import io
import json
import logging
import sys

from hotspotd.errors import (
    ERROR_REMEDIATIONS,
    CommandFailed,
    DaemonNotAlive,
    HotspotError,
    ShutdownRequested,
    build_error_detail,
)
from hotspotd.logging import JsonFormatter, correlation, setup_logging

from conftest import FAKE_TOOLS


def test_every_error_code_has_remediation():
    for cls in HotspotError.__subclasses__():
        assert cls.code in ERROR_REMEDIATIONS


def test_error_str_and_dict():
    exc = DaemonNotAlive("hostapd_exited_early", step="launch_hostapd", resource="hostapd", detail="rc=1")

    assert str(exc) == "hostapd_exited_early step=launch_hostapd resource=hostapd detail=rc=1"
    d = exc.to_dict()
    assert d["code"] == "daemon_not_alive"
    assert d["context"]["step"] == "launch_hostapd"
    assert d["context"]["message"] == "hostapd_exited_early"
    assert "port 53" in d["remediation"]


def test_error_default_message():
    assert str(CommandFailed()) == "command_failed"
    assert isinstance(CommandFailed(), RuntimeError)


def test_shutdown_requested_is_not_an_exception():
    exc = ShutdownRequested("SIGTERM")
    assert not isinstance(exc, Exception)
    assert exc.signame == "SIGTERM"


def test_build_error_detail_unknown_code():
    assert build_error_detail("weird")["remediation"] == "Check logs for details."


def test_json_formatter_structured_fields():
    record = logging.LogRecord("hotspotd.lifecycle", logging.WARNING, __file__, 1, "step_failed iface=%s", ("ap0",), None)
    record.step = "create_ap_iface"
    record.iface = "ap0"
    record.correlation_id = "c-1"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "hotspotd.lifecycle"
    assert payload["msg"] == "step_failed iface=ap0"
    assert payload["step"] == "create_ap_iface"
    assert payload["iface"] == "ap0"
    assert payload["correlation_id"] == "c-1"
    assert "daemon" not in payload


def test_json_formatter_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in payload["exc"]


def test_correlation_context_tags_records():
    record = logging.LogRecord("hotspotd.cmd", logging.INFO, __file__, 1, "cmd_ok", (), None)

    with correlation("op-7"):
        inside = json.loads(JsonFormatter().format(record))
    outside = json.loads(JsonFormatter().format(record))

    assert inside["correlation_id"] == "op-7"
    assert "correlation_id" not in outside


def test_explicit_correlation_wins_over_context():
    record = logging.LogRecord("hotspotd.lifecycle", logging.INFO, __file__, 1, "x", (), None)
    record.correlation_id = "signal:SIGTERM"

    with correlation("run"):
        payload = json.loads(JsonFormatter().format(record))

    assert payload["correlation_id"] == "signal:SIGTERM"


def test_worker_thread_name_is_recorded():
    record = logging.LogRecord("hotspotd.watchdog", logging.INFO, __file__, 1, "tick", (), None)
    record.threadName = "connectivity-watchdog"

    assert json.loads(JsonFormatter().format(record))["thread"] == "connectivity-watchdog"


def test_setup_logging_level_and_stream(monkeypatch):
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    buf = io.StringIO()
    try:
        monkeypatch.setenv("HOTSPOTD_LOG_LEVEL", "debug")
        setup_logging(stream=buf)
        assert root.level == logging.DEBUG
        logging.getLogger("hotspotd.test").debug("hello %s", "ap0")
        assert json.loads(buf.getvalue().splitlines()[-1])["msg"] == "hello ap0"

        setup_logging(level="chatty", stream=buf)
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_start_records_carry_correlation_id(make_controller, host):
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("hotspotd.preflight")
    logger.addHandler(handler)
    try:
        host.nm_running = False
        ctl = make_controller(tool_locator=lambda: {**FAKE_TOOLS, "systemctl": "systemctl"})
        assert ctl.start(correlation_id="cid-9").code == "started"
    finally:
        logger.removeHandler(handler)

    lines = [json.loads(line) for line in buf.getvalue().splitlines()]
    started = [p for p in lines if p["msg"] == "network_manager_not_running starting"]
    assert started and started[0]["correlation_id"] == "cid-9"
