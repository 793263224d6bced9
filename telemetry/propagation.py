"""
Error Propagation Tracker.

============================================================
PURPOSE
============================================================
Correlates error events across contexts into propagation chains
and surfaces chains nobody handled.

CORRELATION:
- Events sharing a correlation id join the same open chain
- Without one, an event joins the most recent open chain whose last
  event is within the causal window AND whose last context is
  connected to this one by an active route
- Otherwise it starts a new chain

FINALIZATION:
- A chain that received no new event for the quiet period is
  finalized by sweep(); quiet time counts from when the tracker last
  received an event for it, not from event timestamps
- Finalized chains with no handled/recovered event are unhandled
  findings

============================================================
"""

import logging
from collections import Counter, deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .config import PropagationConfig
from .events import EventBus, EventTopic
from .models import ChainResolution, ErrorEvent, PropagationChain


logger = logging.getLogger(__name__)


class ErrorPropagationTracker:
    """Builds PropagationChains from ErrorEvents."""

    def __init__(
        self,
        config: Optional[PropagationConfig] = None,
        clock: Optional[ClockProtocol] = None,
        is_connected: Optional[Callable[[str, str], bool]] = None,
        bus: Optional[EventBus] = None,
    ):
        self._config = config or PropagationConfig()
        self._clock = clock or SystemClock()
        self._is_connected = is_connected or (lambda a, b: False)
        self._bus = bus

        self._open: Dict[str, PropagationChain] = {}
        self._by_correlation: Dict[str, str] = {}
        # chain_id -> clock time of the last event received
        self._last_received: Dict[str, datetime] = {}
        self._finalized: Deque[PropagationChain] = deque(maxlen=self._config.max_finalized_chains)
        self._chain_seq = 0
        self._event_count = 0

    # --------------------------------------------------------
    # WRITE PATH
    # --------------------------------------------------------

    def record(self, event: ErrorEvent) -> PropagationChain:
        """Attach an error event to a chain and return that chain."""
        self._event_count += 1

        chain = self._find_chain(event)
        if chain is None:
            self._chain_seq += 1
            chain = PropagationChain(
                chain_id=f"chain-{self._chain_seq}",
                events=(event,),
                correlation_id=event.correlation_id,
            )
        else:
            events = sorted(chain.events + (event,), key=lambda e: e.timestamp)
            chain = replace(
                chain,
                events=tuple(events),
                correlation_id=chain.correlation_id or event.correlation_id,
            )

        self._open = {**self._open, chain.chain_id: chain}
        self._last_received[chain.chain_id] = self._clock.now()
        if chain.correlation_id:
            self._by_correlation[chain.correlation_id] = chain.chain_id
        return chain

    def _find_chain(self, event: ErrorEvent) -> Optional[PropagationChain]:
        if event.correlation_id:
            # Correlated events only ever join by correlation id
            chain_id = self._by_correlation.get(event.correlation_id)
            return self._open.get(chain_id) if chain_id else None
        return self._find_causal_chain(event)

    def _find_causal_chain(self, event: ErrorEvent) -> Optional[PropagationChain]:
        window = self._config.causal_window_seconds
        best: Optional[PropagationChain] = None
        best_gap = None

        for chain in self._open.values():
            gap = abs((event.timestamp - chain.last_event_at).total_seconds())
            if gap > window:
                continue
            last_context = chain.events[-1].context_id
            if last_context == event.context_id:
                continue
            if not self._is_connected(last_context, event.context_id):
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = chain, gap

        return best

    def sweep(self) -> List[PropagationChain]:
        """Finalize chains that have been quiet long enough."""
        quiet = self._config.quiet_period_seconds
        finalized = []

        for chain in list(self._open.values()):
            received = self._last_received.get(chain.chain_id)
            if received is not None and self._clock.seconds_since(received) < quiet:
                continue
            done = replace(chain, finalized=True)
            finalized.append(done)
            self._finalized.append(done)

        if not finalized:
            return []

        remaining = dict(self._open)
        for chain in finalized:
            remaining.pop(chain.chain_id, None)
            self._last_received.pop(chain.chain_id, None)
            if chain.correlation_id and self._by_correlation.get(chain.correlation_id) == chain.chain_id:
                del self._by_correlation[chain.correlation_id]
            if chain.resolution == ChainResolution.UNHANDLED:
                logger.warning(f"Unhandled error propagation {chain.chain_id}: {chain.path}")
            if self._bus is not None:
                self._bus.publish(EventTopic.CHAIN_FINALIZED, chain)
        self._open = remaining

        return finalized

    # --------------------------------------------------------
    # READ PATH
    # --------------------------------------------------------

    def open_chains(self) -> List[PropagationChain]:
        return sorted(self._open.values(), key=lambda c: c.started_at)

    def finalized_chains(self, limit: Optional[int] = None) -> List[PropagationChain]:
        """Newest first."""
        chains = list(self._finalized)[::-1]
        return chains[:limit] if limit is not None else chains

    def unhandled_chains(self, limit: Optional[int] = None) -> List[PropagationChain]:
        chains = [c for c in self.finalized_chains() if c.resolution == ChainResolution.UNHANDLED]
        return chains[:limit] if limit is not None else chains

    def recent_chains(self, limit: int = 20) -> List[PropagationChain]:
        """Open and finalized chains, most recent activity first."""
        chains = list(self._open.values()) + list(self._finalized)
        chains.sort(key=lambda c: c.last_event_at, reverse=True)
        return chains[:limit]

    def get_chain(self, chain_id: str) -> Optional[PropagationChain]:
        if chain_id in self._open:
            return self._open[chain_id]
        for chain in self._finalized:
            if chain.chain_id == chain_id:
                return chain
        return None

    def analysis(self) -> Dict[str, Any]:
        """Aggregate view of propagation behavior."""
        chains = list(self._open.values()) + list(self._finalized)
        paths = Counter(c.path for c in chains)
        resolutions = Counter(c.resolution.value for c in chains)

        return {
            "events": self._event_count,
            "total_chains": len(chains),
            "open_chains": len(self._open),
            "finalized_chains": len(self._finalized),
            "unhandled_chains": resolutions.get(ChainResolution.UNHANDLED.value, 0),
            "by_resolution": dict(resolutions),
            "average_depth": sum(c.length for c in chains) / len(chains) if chains else 0.0,
            "most_common_paths": [
                {"path": path, "count": count} for path, count in paths.most_common(5)
            ],
            "isolated_errors": sum(1 for c in chains if c.length == 1),
            "cascading_errors": sum(1 for c in chains if c.length > 1),
        }


__all__ = ["ErrorPropagationTracker"]
