import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from hotspotd import config as hconfig
from hotspotd.cmd import CommandRunner
from hotspotd.config import HotspotConfig, load_config, write_config
from hotspotd.connectivity import ReachabilityProbe
from hotspotd.engine.daemon_conf import render_dnsmasq_conf, render_hostapd_conf, write_private
from hotspotd.engine.iptables import Iptables, nat_rules, rule_text
from hotspotd.engine.netops import HostNet
from hotspotd.engine.supervisor import DaemonHandle, DaemonSpec, ProcessSupervisor
from hotspotd.errors import (
    CommandFailed,
    ConfigError,
    DaemonNotAlive,
    HotspotError,
    ShutdownRequested,
)
from hotspotd.link_probe import LinkProber, UplinkSnapshot
from hotspotd.logging import correlation
from hotspotd.nm import NetworkManagerCli
from hotspotd.preflight import run_preflight
from hotspotd.resolver import NetworkResolver
from hotspotd.state import reset_state, update_state
from hotspotd.tools import locate_tools
from hotspotd.watchdog import ConnectivityWatchdog

log = logging.getLogger("hotspotd.lifecycle")

DHCP_LIVENESS_ATTEMPTS = 3
DHCP_LIVENESS_SPACING_S = 2.0


class State(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    INTERFACE_UP = "interface_up"
    DAEMONS_STARTING = "daemons_starting"
    STEADY = "steady"
    STOPPING = "stopping"
    FAILED = "failed"


_TEARDOWN_STATES = (State.STOPPING, State.FAILED)


class LifecycleResult:
    def __init__(
        self,
        code: str,
        state: State,
        error: Optional[HotspotError] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.code = code
        self.state = state
        self.error = error
        self.warnings = list(warnings or [])

    @property
    def ok(self) -> bool:
        return self.error is None and not self.code.endswith(("_failed", "_interrupted", "_rejected_active"))

    def __repr__(self) -> str:
        return f"LifecycleResult(code={self.code!r}, state={self.state.value!r}, error={self.error!r})"


@dataclass
class ApSession:
    """
    Everything the running hotspot owns on the host. Teardown undoes exactly
    what is recorded here.
    """

    state: State
    ap_interface: str
    uplink_interface: Optional[str] = None
    uplink: Optional[UplinkSnapshot] = None
    config: Optional[HotspotConfig] = None
    beacon: Optional[DaemonHandle] = None
    dhcp: Optional[DaemonHandle] = None
    nat_rules: List[List[str]] = field(default_factory=list)
    ip_forward_prev: Optional[str] = None
    conf_files: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class HotspotController:
    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        tool_locator: Callable[[], Dict[str, str]] = locate_tools,
        config_loader: Callable[[], HotspotConfig] = load_config,
        config_writer: Callable[[HotspotConfig], HotspotConfig] = write_config,
        uplink_interface: Optional[str] = None,
        ap_interface: str = hconfig.AP_IFNAME,
        hostapd_conf_path: Optional[Path] = None,
        dnsmasq_conf_path: Optional[Path] = None,
        probe_host: Optional[str] = None,
        watchdog_interval_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        persist_state: bool = True,
    ):
        self._runner = runner or CommandRunner()
        self._supervisor = supervisor or ProcessSupervisor()
        self._tool_locator = tool_locator
        self._config_loader = config_loader
        self._config_writer = config_writer
        self._uplink_override = uplink_interface
        self.ap_interface = ap_interface
        self.hostapd_conf_path = hostapd_conf_path or hconfig.HOSTAPD_CONF_PATH
        self.dnsmasq_conf_path = dnsmasq_conf_path or hconfig.DNSMASQ_CONF_PATH
        self._probe_host = probe_host
        self._watchdog_interval_s = watchdog_interval_s
        self._sleep = sleep
        self._persist_enabled = persist_state

        # Reentrant: a signal handled on the control thread may call stop()
        # while that thread already holds the lock.
        self._op_lock = threading.RLock()
        self._session: Optional[ApSession] = None
        self._in_transition = False
        self._watchdog: Optional[ConnectivityWatchdog] = None
        self.shutdown_requested = threading.Event()
        self.transitions: List[State] = []

        self._tools: Dict[str, str] = {}
        self._host: Optional[HostNet] = None
        self._iptables: Optional[Iptables] = None
        self._prober: Optional[LinkProber] = None
        self._probe: Optional[ReachabilityProbe] = None
        self._resolver: Optional[NetworkResolver] = None

    # introspection

    @property
    def state(self) -> State:
        sess = self._session
        return sess.state if sess is not None else State.IDLE

    @property
    def session(self) -> Optional[ApSession]:
        return self._session

    @property
    def watchdog(self) -> Optional[ConnectivityWatchdog]:
        return self._watchdog

    def status(self) -> Dict[str, Any]:
        sess = self._session
        if sess is None:
            return {"state": State.IDLE.value}
        up = sess.uplink
        return {
            "state": sess.state.value,
            "ap_interface": sess.ap_interface,
            "uplink_interface": sess.uplink_interface,
            "channel": up.channel if up else None,
            "hw_mode": up.hw_mode if up else None,
            "hostapd_pid": sess.beacon.pid if sess.beacon else None,
            "dnsmasq_pid": sess.dhcp.pid if sess.dhcp else None,
            "firewall_rules": [rule_text(r) for r in sess.nat_rules],
            "warnings": list(sess.warnings),
        }

    # public operations

    def start(self, correlation_id: str = "start") -> LifecycleResult:
        with self._op_lock, correlation(correlation_id):
            if self._session is not None:
                log.info(
                    "start_rejected_already_running state=%s",
                    self._session.state.value,
                    extra={"op": "start", "correlation_id": correlation_id},
                )
                return LifecycleResult("already_running", self._session.state)

            self._session = ApSession(state=State.VALIDATING, ap_interface=self.ap_interface)
            self._in_transition = True
            try:
                self._enter(State.VALIDATING, correlation_id=correlation_id)
                self._validate()

                self._enter(State.INTERFACE_UP)
                self._bring_up_interface()

                self._enter(State.DAEMONS_STARTING)
                self._start_beacon()
                self._start_network()

                self._enter(State.STEADY)
                self._persist_steady()
                self._start_watchdog()
                warnings = list(self._session.warnings)
            except HotspotError as exc:
                warnings = self._fail(exc)
                return LifecycleResult("start_failed", self.state, error=exc, warnings=warnings)
            except ShutdownRequested as exc:
                log.warning("start_interrupted signal=%s", exc.signame, extra={"op": "start"})
                warnings = self._fail(None, reason=f"interrupted:{exc.signame}")
                return LifecycleResult("start_interrupted", self.state, warnings=warnings)
            except BaseException:
                log.exception("start_unexpected_error", extra={"op": "start"})
                self._fail(None, reason="unexpected_error")
                raise
            finally:
                self._in_transition = False

            sess = self._session
            log.info(
                "hotspot_started ap=%s uplink=%s channel=%s hw_mode=%s",
                sess.ap_interface,
                sess.uplink_interface,
                sess.uplink.channel if sess.uplink else None,
                sess.uplink.hw_mode if sess.uplink else None,
                extra={"op": "start", "correlation_id": correlation_id},
            )
            return LifecycleResult("started", State.STEADY, warnings=warnings)

    def stop(self, correlation_id: str = "stop") -> LifecycleResult:
        with self._op_lock, correlation(correlation_id):
            sess = self._session
            if sess is None:
                return LifecycleResult("already_stopped", State.IDLE)
            if sess.state in _TEARDOWN_STATES:
                return LifecycleResult("already_stopping", sess.state)

            self._enter(State.STOPPING, correlation_id=correlation_id)
            warnings = self._teardown()
            code = "stopped" if not any(w.startswith("teardown_") for w in warnings) else "stop_incomplete"
            return LifecycleResult(code, State.IDLE, warnings=warnings)

    def reconfigure(self, ssid: str, passphrase: str, interval_s: Optional[int] = None) -> LifecycleResult:
        with self._op_lock:
            if self._session is not None:
                log.warning("reconfigure_rejected_active state=%s", self._session.state.value)
                return LifecycleResult("reconfigure_rejected_active", self._session.state)
            cfg = HotspotConfig(
                ssid=ssid,
                passphrase=passphrase,
                interval_s=interval_s if interval_s is not None else hconfig.DEFAULT_INTERVAL_S,
            )
            try:
                self._config_writer(cfg.validate())
            except ConfigError as exc:
                return LifecycleResult("reconfigure_failed", State.IDLE, error=exc)
            except OSError as exc:
                err = ConfigError("config_write_failed", step="reconfigure", detail=str(exc))
                return LifecycleResult("reconfigure_failed", State.IDLE, error=err)
            log.info("reconfigured ssid=%s interval_s=%s", cfg.ssid, cfg.interval_s, extra={"op": "reconfigure"})
            return LifecycleResult("reconfigured", State.IDLE)

    def check_daemons(self) -> bool:
        """
        Point-in-time liveness of both daemons while steady. A dead daemon
        fails the session and rolls it back.
        """
        with self._op_lock:
            sess = self._session
            if sess is None or sess.state is not State.STEADY:
                return True
            for handle in (sess.beacon, sess.dhcp):
                if self._supervisor.is_alive(handle):
                    continue
                if self._session is not sess:
                    return True
                name = handle.name if handle else "daemon"
                exc = DaemonNotAlive(
                    f"{name}_exited",
                    step="steady_liveness",
                    resource=name,
                    detail=f"rc={handle.exit_code if handle else None}",
                )
                self._fail(exc)
                return False
            return True

    def handle_signal(self, signum: int, _frame=None) -> None:
        try:
            signame = signal.Signals(signum).name
        except ValueError:
            signame = str(signum)
        self.shutdown_requested.set()

        st = self.state
        if st is State.IDLE or st in _TEARDOWN_STATES:
            log.info("shutdown_signal:%s nothing_to_do state=%s", signame, st.value)
            return
        # start() holds the transition until the watchdog is running, STEADY included
        if self._in_transition:
            log.info("shutdown_signal:%s interrupting_start state=%s", signame, st.value)
            raise ShutdownRequested(signame)
        log.info("shutdown_signal:%s", signame)
        self.stop(correlation_id=f"signal:{signame}")

    def install_signal_handlers(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self.handle_signal)

    # transitions

    def _enter(self, new_state: State, correlation_id: Optional[str] = None) -> None:
        sess = self._session
        old = sess.state if sess is not None else State.IDLE
        if sess is not None:
            sess.state = new_state
        self.transitions.append(new_state)
        extra: Dict[str, Any] = {"state": new_state.value}
        if correlation_id:
            extra["correlation_id"] = correlation_id
        log.info("state_transition from=%s to=%s", old.value, new_state.value, extra=extra)
        fields: Dict[str, Any] = {"phase": new_state.value, "orchestrator_pid": os.getpid()}
        if correlation_id:
            fields["last_correlation_id"] = correlation_id
        if new_state is State.VALIDATING:
            fields["last_op"] = "start"
            fields["last_error"] = None
        elif new_state is State.STOPPING:
            fields["last_op"] = "stop"
        self._persist(**fields)

    def _bind_tools(self, tools: Dict[str, str]) -> None:
        self._tools = tools
        self._host = HostNet(
            self._runner,
            iw=tools["iw"],
            ip=tools["ip"],
            sysctl=tools["sysctl"],
            nmcli=tools["nmcli"],
        )
        self._iptables = Iptables(self._runner, tools["iptables"])
        self._prober = LinkProber(self._runner, iw=tools["iw"], nmcli=tools["nmcli"])
        self._probe = ReachabilityProbe(self._runner, ping=tools["ping"], host=self._probe_host)
        self._resolver = NetworkResolver(
            NetworkManagerCli(self._runner, tools["nmcli"]),
            self._probe,
            sleep=self._sleep,
        )

    def _validate(self) -> None:
        sess = self._session
        self._bind_tools(self._tool_locator())
        sess.warnings.extend(
            run_preflight(
                self._runner,
                nmcli=self._tools["nmcli"],
                systemctl=self._tools.get("systemctl"),
            )
        )
        sess.uplink = self._prober.probe(self._uplink_override)
        sess.uplink_interface = sess.uplink.ifname
        sess.config = self._config_loader()

    def _bring_up_interface(self) -> None:
        sess = self._session
        ap = sess.ap_interface
        if self._host.iface_exists(ap):
            log.warning("stale_ap_iface_removing iface=%s", ap, extra={"iface": ap})
            self._host.delete_iface(ap)
        self._host.create_ap_iface(sess.uplink_interface, ap)
        log.info("ap_iface_created iface=%s parent=%s", ap, sess.uplink_interface, extra={"iface": ap})
        self._host.set_unmanaged(ap)

    def _initial_reconnect(self) -> None:
        sess = self._session
        if self._probe():
            log.info("initial_reachability_ok")
            return
        log.warning("initial_reachability_failed attempting_reconnect")
        result = self._resolver.resolve()
        if result.ok:
            log.info("initial_reconnect_ok network=%s", result.network)
            return
        # the AP comes up regardless; clients can still reach each other
        sess.warnings.append(f"initial_reconnect:{result.outcome.value}")
        log.warning(
            "initial_reconnect_failed outcome=%s detail=%s continuing",
            result.outcome.value,
            result.detail,
            extra={"outcome": result.outcome.value},
        )

    def _stop_stray_dhcp(self) -> None:
        res = self._runner.run([self._tools["pkill"], "-x", "dnsmasq"], privileged=True)
        if res.rc == 0:
            log.info("stray_dnsmasq_stopped")
            return
        if res.rc == 1:
            return
        raise CommandFailed(
            f"cmd_failed rc={res.rc}",
            step="stop_stray_dnsmasq",
            resource="dnsmasq",
            detail=res.out or None,
        )

    def _write_conf(self, path: Path, text: str, step: str) -> None:
        self._session.conf_files.append(path)
        try:
            write_private(path, text)
        except OSError as exc:
            raise CommandFailed("conf_write_failed", step=step, resource=str(path), detail=str(exc)) from exc

    def _start_beacon(self) -> None:
        sess = self._session
        self._initial_reconnect()
        self._stop_stray_dhcp()

        self._write_conf(
            self.hostapd_conf_path,
            render_hostapd_conf(
                ifname=sess.ap_interface,
                ssid=sess.config.ssid,
                passphrase=sess.config.passphrase,
                hw_mode=sess.uplink.hw_mode,
                channel=sess.uplink.channel,
            ),
            step="write_hostapd_conf",
        )
        sess.beacon = self._supervisor.launch(
            DaemonSpec(name="hostapd", argv=[self._tools["hostapd"], str(self.hostapd_conf_path)])
        )
        if not self._supervisor.is_alive(sess.beacon):
            raise DaemonNotAlive(
                "hostapd_exited_early",
                step="launch_hostapd",
                resource="hostapd",
                detail=" | ".join(sess.beacon.tail()[-5:]) or f"rc={sess.beacon.exit_code}",
            )

    def _start_network(self) -> None:
        sess = self._session
        ap = sess.ap_interface

        self._host.assign_address(ap, hconfig.ap_cidr())
        self._host.link_up(ap)
        self._host.verify_address(ap, hconfig.AP_ADDRESS)

        self._write_conf(
            self.dnsmasq_conf_path,
            render_dnsmasq_conf(
                ifname=ap,
                listen_ip=hconfig.AP_ADDRESS,
                dhcp_start=hconfig.DHCP_START,
                dhcp_end=hconfig.DHCP_END,
                lease=hconfig.DHCP_LEASE,
            ),
            step="write_dnsmasq_conf",
        )
        sess.dhcp = self._supervisor.launch(
            DaemonSpec(
                name="dnsmasq",
                argv=[
                    self._tools["dnsmasq"],
                    "--keep-in-foreground",
                    f"--conf-file={self.dnsmasq_conf_path}",
                ],
            )
        )
        self._await_dhcp(sess.dhcp)

        prev = self._host.read_ip_forward()
        if prev != "1":
            self._host.set_ip_forward("1")
            sess.ip_forward_prev = prev or "0"

        for rule in nat_rules(ap, sess.uplink_interface):
            if self._iptables.add_unique(rule):
                sess.nat_rules.append(rule)
            else:
                log.info("firewall_rule_present rule=%s", rule_text(rule))

    def _await_dhcp(self, handle: DaemonHandle) -> None:
        for attempt in range(1, DHCP_LIVENESS_ATTEMPTS + 1):
            self._sleep(DHCP_LIVENESS_SPACING_S)
            if self._supervisor.is_alive(handle):
                log.info("dnsmasq_alive attempt=%d", attempt, extra={"daemon": "dnsmasq"})
                return
            log.warning(
                "dnsmasq_waiting attempt=%d/%d",
                attempt,
                DHCP_LIVENESS_ATTEMPTS,
                extra={"daemon": "dnsmasq"},
            )
        raise DaemonNotAlive(
            "dnsmasq_not_running",
            step="launch_dnsmasq",
            resource="dnsmasq",
            detail=" | ".join(handle.tail()[-5:]) or f"rc={handle.exit_code}",
        )

    def _start_watchdog(self) -> None:
        sess = self._session
        interval = self._watchdog_interval_s or sess.config.interval_s
        self._watchdog = ConnectivityWatchdog(
            interval_s=interval,
            is_steady=lambda: self.state is State.STEADY,
            probe=self._probe,
            resolve=self._resolver.resolve,
            record_state=self._persist_enabled,
        )
        self._watchdog.start()

    # failure / teardown

    def _fail(self, exc: Optional[HotspotError], reason: Optional[str] = None) -> List[str]:
        sess = self._session
        if sess is None:
            return []
        failed_in = sess.state
        sess.state = State.FAILED
        self.transitions.append(State.FAILED)
        if exc is not None:
            err: Dict[str, Any] = exc.to_dict()
            log.error(
                "lifecycle_failed in=%s code=%s err=%s",
                failed_in.value,
                exc.code,
                exc,
                extra={"state": State.FAILED.value, "step": exc.step, "resource": exc.resource},
            )
        else:
            err = {"code": reason or "unknown", "context": {}}
            log.error("lifecycle_failed in=%s reason=%s", failed_in.value, reason)
        self._persist(phase=State.FAILED.value, last_error=err)
        return self._teardown(last_error=err)

    def _teardown(self, last_error: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Undo everything the session recorded, in reverse start order. Every
        step runs even when an earlier one failed.
        """
        sess = self._session
        if sess is None:
            return []
        warnings: List[str] = list(sess.warnings)

        def _step(name: str, fn: Callable[[], None]) -> None:
            try:
                fn()
            except Exception as exc:
                warnings.append(f"teardown_{name}_failed:{exc}")
                log.error("teardown_step_failed step=%s err=%s", name, exc, extra={"step": name})

        _step("stop_watchdog", self._stop_watchdog)
        if sess.beacon is not None:
            _step("terminate_hostapd", lambda: self._terminate(sess.beacon))
        if sess.dhcp is not None:
            _step("terminate_dnsmasq", lambda: self._terminate(sess.dhcp))
        for rule in reversed(list(sess.nat_rules)):
            _step("delete_firewall_rule", lambda r=rule: self._delete_rule(sess, r))
        if sess.ip_forward_prev is not None:
            _step("restore_ip_forward", lambda: self._host.set_ip_forward(sess.ip_forward_prev))
        if self._host is not None:
            _step("delete_ap_iface", lambda: self._delete_ap_iface(sess.ap_interface))
        for path in reversed(sess.conf_files):
            _step("remove_conf", lambda p=path: self._remove_file(p))

        self._session = None
        self.transitions.append(State.IDLE)
        log.info("state_transition to=%s warnings=%d", State.IDLE.value, len(warnings), extra={"state": "idle"})
        self._persist(reset=True, last_error=last_error, warnings=warnings, last_op="stop")
        return warnings

    def _stop_watchdog(self) -> None:
        wd = self._watchdog
        self._watchdog = None
        if wd is not None:
            wd.stop()

    def _terminate(self, handle: DaemonHandle) -> None:
        rc = self._supervisor.terminate(handle)
        if rc is None and self._supervisor.is_alive(handle):
            raise CommandFailed("daemon_not_reaped", step=f"terminate_{handle.name}", resource=handle.name)

    def _delete_rule(self, sess: ApSession, rule: List[str]) -> None:
        res = self._iptables.delete(rule)
        if not res.ok:
            raise CommandFailed(
                f"cmd_failed rc={res.rc}",
                step="delete_firewall_rule",
                resource=rule_text(rule),
                detail=res.out or None,
            )
        sess.nat_rules.remove(rule)

    def _delete_ap_iface(self, ifname: str) -> None:
        if self._host.iface_exists(ifname):
            self._host.delete_iface(ifname)
            log.info("ap_iface_deleted iface=%s", ifname, extra={"iface": ifname})

    @staticmethod
    def _remove_file(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    # runtime state file

    def _persist_steady(self) -> None:
        sess = self._session
        up = sess.uplink
        self._persist(
            ap_interface=sess.ap_interface,
            ssid=sess.config.ssid if sess.config else None,
            uplink={
                "ifname": up.ifname,
                "connection": up.connection,
                "channel": up.channel,
                "freq_mhz": up.freq_mhz,
                "hw_mode": up.hw_mode,
                "clamped": up.clamped,
            },
            daemons={
                "hostapd_pid": sess.beacon.pid if sess.beacon else None,
                "dnsmasq_pid": sess.dhcp.pid if sess.dhcp else None,
            },
            warnings=list(sess.warnings),
        )

    def _persist(self, reset: bool = False, **fields) -> None:
        if not self._persist_enabled:
            return
        try:
            if reset:
                reset_state(phase=State.IDLE.value, **fields)
            else:
                update_state(**fields)
        except OSError:
            log.exception("state_write_failed")
