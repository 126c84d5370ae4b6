import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from hotspotd.nm import NetworkManagerCli

log = logging.getLogger("hotspotd.resolver")

SETTLE_S = 2.0


class Outcome(str, Enum):
    RECONNECTED = "reconnected"
    NO_CANDIDATES = "no_candidates"
    ACTIVATION_FAILED = "activation_failed"
    STILL_UNREACHABLE = "still_unreachable"


@dataclass(frozen=True)
class ResolveResult:
    outcome: Outcome
    network: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.RECONNECTED


def select_best(
    known: Iterable[str],
    visible: Sequence[Tuple[str, int]],
) -> Optional[Tuple[str, int]]:
    """
    Highest-signal visible network whose SSID is a known connection name.
    Only a strictly greater signal replaces the current pick, so ties keep
    the earlier scan entry.
    """
    known_set = set(known)
    best: Optional[Tuple[str, int]] = None
    for ssid, signal in visible:
        if ssid not in known_set:
            continue
        if best is None or signal > best[1]:
            best = (ssid, signal)
    return best


class NetworkResolver:
    """
    Uplink-side failover. Only ever activates a saved NetworkManager
    connection; never touches the AP interface, daemons or firewall.
    """

    def __init__(
        self,
        nm: NetworkManagerCli,
        probe: Callable[[], bool],
        settle_s: float = SETTLE_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.nm = nm
        self.probe = probe
        self.settle_s = settle_s
        self.sleep = sleep

    def resolve(self) -> ResolveResult:
        known: List[str] = self.nm.known_wifi_networks()
        if not known:
            log.warning("resolver_no_known_networks", extra={"outcome": Outcome.NO_CANDIDATES.value})
            return ResolveResult(Outcome.NO_CANDIDATES, detail="no_known_networks")

        visible = self.nm.visible_networks()
        if not visible:
            log.warning(
                "resolver_no_visible_networks scanning may be unsupported while the AP is up",
                extra={"outcome": Outcome.NO_CANDIDATES.value},
            )
            return ResolveResult(Outcome.NO_CANDIDATES, detail="no_visible_networks")

        best = select_best(known, visible)
        if best is None:
            log.warning(
                "resolver_no_known_network_in_range known=%d visible=%d",
                len(known),
                len(visible),
                extra={"outcome": Outcome.NO_CANDIDATES.value},
            )
            return ResolveResult(Outcome.NO_CANDIDATES, detail="no_known_network_in_range")

        name, signal = best
        log.info("resolver_candidate network=%s signal=%s", name, signal)

        res = self.nm.connection_up(name)
        if not res.ok:
            log.error(
                "resolver_activation_failed network=%s rc=%s out=%s",
                name,
                res.rc,
                res.out,
                extra={"outcome": Outcome.ACTIVATION_FAILED.value},
            )
            return ResolveResult(Outcome.ACTIVATION_FAILED, network=name, detail=res.out or None)

        self.sleep(self.settle_s)
        if not self.probe():
            log.warning(
                "resolver_still_unreachable network=%s",
                name,
                extra={"outcome": Outcome.STILL_UNREACHABLE.value},
            )
            return ResolveResult(Outcome.STILL_UNREACHABLE, network=name)

        log.info("resolver_reconnected network=%s", name, extra={"outcome": Outcome.RECONNECTED.value})
        return ResolveResult(Outcome.RECONNECTED, network=name)
