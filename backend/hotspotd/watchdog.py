import logging
import threading
import time
from typing import Callable, Optional

from hotspotd.resolver import ResolveResult
from hotspotd.state import update_state

log = logging.getLogger("hotspotd.watchdog")


class ConnectivityWatchdog:
    """
    Periodic uplink check while the controller is steady. A failed check
    triggers one resolver run; whatever the outcome, the access point is
    left alone.
    """

    def __init__(
        self,
        *,
        interval_s: float,
        is_steady: Callable[[], bool],
        probe: Callable[[], bool],
        resolve: Callable[[], ResolveResult],
        record_state: bool = True,
    ):
        self.interval_s = max(0.01, float(interval_s))
        self._is_steady = is_steady
        self._probe = probe
        self._resolve = resolve
        self._record_state = record_state
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="connectivity-watchdog", daemon=True)
        self._thread.start()
        log.info("watchdog_started interval_s=%s", self.interval_s)

    def stop(self) -> None:
        """
        Cooperative stop: a tick already in progress (probe or reconnect)
        finishes before this returns.
        """
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join()
        self._thread = None
        log.info("watchdog_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            if not self._is_steady():
                continue
            try:
                self.tick()
            except Exception:
                log.exception("watchdog_tick_failed")

    def tick(self) -> Optional[ResolveResult]:
        reachable = self._probe()
        self._record(reachable=reachable)
        if reachable:
            log.debug("uplink_reachable")
            return None

        log.warning("uplink_unreachable attempting_reconnect")
        result = self._resolve()
        log.info(
            "watchdog_resolve outcome=%s network=%s detail=%s",
            result.outcome.value,
            result.network,
            result.detail,
            extra={"outcome": result.outcome.value},
        )
        self._record(
            reachable=result.ok,
            last_resolve=result.outcome.value,
            last_network=result.network,
        )
        return result

    def _record(self, **fields) -> None:
        if not self._record_state:
            return
        fields["last_check_ts"] = int(time.time())
        try:
            update_state(connectivity=fields)
        except OSError:
            log.exception("watchdog_state_write_failed")
