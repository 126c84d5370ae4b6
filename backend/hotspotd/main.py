import argparse
import getpass
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from hotspotd import config as hconfig
from hotspotd.config import HotspotConfig, config_exists, uplink_override, write_config
from hotspotd.errors import ConfigError
from hotspotd.lifecycle import HotspotController, State
from hotspotd.logging import setup_logging
from hotspotd.state import load_state

log = logging.getLogger("hotspotd.main")

NOFILE_TARGET = 4096
DAEMON_CHECK_INTERVAL_S = 1.0


def _raise_nofile_limit(target: int = NOFILE_TARGET) -> None:
    try:
        import resource
    except ImportError:
        return
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        if soft != resource.RLIM_INFINITY and soft < target:
            new_soft = target if hard == resource.RLIM_INFINITY else min(target, hard)
            resource.setrlimit(resource.RLIMIT_NOFILE, (new_soft, hard))
            log.info("nofile_limit_raised soft=%s->%s", soft, new_soft)
    except (OSError, ValueError) as exc:
        log.warning("nofile_limit_unchanged err=%s", exc)


def _prompt_config() -> HotspotConfig:
    ssid = input("Hotspot SSID: ").strip()
    passphrase = getpass.getpass("Hotspot passphrase (8-63 chars): ")
    raw = input(f"Connectivity check interval in seconds [{hconfig.DEFAULT_INTERVAL_S}]: ")
    cfg = HotspotConfig(ssid=ssid, passphrase=passphrase, interval_s=hconfig.parse_interval(raw))
    return write_config(cfg)


def _ensure_config() -> bool:
    if config_exists():
        return True
    if not sys.stdin.isatty():
        log.error("config_missing path=%s run `hotspotd configure`", hconfig.CONFIG_PATH)
        return False
    try:
        cfg = _prompt_config()
    except ConfigError as exc:
        log.error("config_rejected err=%s", exc)
        return False
    except (EOFError, KeyboardInterrupt):
        return False
    log.info("config_written path=%s ssid=%s", hconfig.CONFIG_PATH, cfg.ssid)
    return True


def cmd_run(args: argparse.Namespace) -> int:
    _raise_nofile_limit()
    if not _ensure_config():
        return 2

    controller = HotspotController(uplink_interface=args.uplink or uplink_override())
    controller.install_signal_handlers()

    result = controller.start(correlation_id="run")
    if result.code != "started":
        if result.error is not None:
            log.error("run_start_failed err=%s", result.error, extra={"op": "start"})
            print(json.dumps(result.error.to_dict(), indent=2), file=sys.stderr)
        return 1 if result.code != "start_interrupted" else 0

    daemons_ok = True
    try:
        while controller.state is State.STEADY:
            if controller.shutdown_requested.wait(DAEMON_CHECK_INTERVAL_S):
                break
            daemons_ok = controller.check_daemons()
    finally:
        if controller.state is not State.IDLE:
            controller.stop(correlation_id="run_exit")
    return 0 if daemons_ok else 1


def cmd_stop(_args: argparse.Namespace) -> int:
    st = load_state()
    pid = st.get("orchestrator_pid")
    if not pid or st.get("phase") == State.IDLE.value:
        print("hotspotd is not running")
        return 0
    try:
        os.kill(int(pid), signal.SIGTERM)
    except ProcessLookupError:
        print(f"hotspotd pid {pid} is gone; state is stale")
        return 0
    except PermissionError:
        print(f"not permitted to signal pid {pid}; run as root", file=sys.stderr)
        return 1
    print(f"sent SIGTERM to {pid}")
    return 0


def cmd_status(_args: argparse.Namespace) -> int:
    print(json.dumps(load_state(), indent=2, sort_keys=True))
    return 0


def cmd_configure(args: argparse.Namespace) -> int:
    if args.ssid is None or args.passphrase is None:
        if not sys.stdin.isatty():
            print("--ssid and --passphrase are required without a terminal", file=sys.stderr)
            return 2
        try:
            cfg = _prompt_config()
        except ConfigError as exc:
            print(f"invalid config: {exc}", file=sys.stderr)
            return 2
        print(f"saved {hconfig.CONFIG_PATH} ssid={cfg.ssid}")
        return 0

    st = load_state()
    if st.get("phase") not in (None, State.IDLE.value):
        print("hotspot is running; stop it before reconfiguring", file=sys.stderr)
        return 1

    controller = HotspotController(persist_state=False)
    result = controller.reconfigure(args.ssid, args.passphrase, args.interval)
    if result.code != "reconfigured":
        print(f"invalid config: {result.error}", file=sys.stderr)
        return 2
    print(f"saved {hconfig.CONFIG_PATH} ssid={args.ssid}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="hotspotd", description="Wi-Fi hotspot orchestrator")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="start the hotspot and hold it until signalled")
    run.add_argument("--uplink", default=None, help="use this connected wifi interface as the uplink")
    run.set_defaults(func=cmd_run)

    stop = sub.add_parser("stop", help="signal a running orchestrator to tear down")
    stop.set_defaults(func=cmd_stop)

    status = sub.add_parser("status", help="print the runtime state")
    status.set_defaults(func=cmd_status)

    conf = sub.add_parser("configure", help="write SSID, passphrase and check interval")
    conf.add_argument("--ssid", default=None)
    conf.add_argument("--passphrase", default=None)
    conf.add_argument("--interval", type=int, default=None)
    conf.set_defaults(func=cmd_configure)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
