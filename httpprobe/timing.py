"""Per-phase timing across the legs of a probe chain.

Each leg reports its socket-lifecycle milestones in a fixed order:

    start -> DNS resolved -> TCP connected -> [TLS secured]
          -> first byte -> response end

Every observed interval is *added* to the matching phase accumulator, so
a phase's total is the sum over all legs of the chain.  Durations are in
seconds, taken from a monotonic clock (``time.perf_counter`` unless a
clock is injected).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from httpprobe.config import (
    PHASE_CONTENT_TRANSFER,
    PHASE_DNS_LOOKUP,
    PHASE_FIRST_BYTE,
    PHASE_TCP_CONNECTION,
    PHASE_TLS_HANDSHAKE,
)

Clock = Callable[[], float]


@dataclass
class LegTimes:
    """Milestones observed on a single leg (absolute clock readings)."""

    start: float
    dns_at: Optional[float] = None
    tcp_at: Optional[float] = None
    tls_at: Optional[float] = None
    first_byte_at: Optional[float] = None
    end_at: Optional[float] = None


class TimingRecorder:
    """Accumulator of phase durations shared by every leg of one chain."""

    def __init__(self, clock: Clock = time.perf_counter) -> None:
        self.durations: dict[str, float] = {}
        self.first_byte_recorded = False
        self._clock = clock

    def _increase(self, phase: str, elapsed: float) -> None:
        self.durations[phase] = self.durations.get(phase, 0.0) + max(elapsed, 0.0)

    def start_leg(self) -> LegTimes:
        return LegTimes(start=self._clock())

    def dns_resolved(self, leg: LegTimes) -> None:
        if leg.tcp_at is not None:
            raise RuntimeError("DNS resolution reported after TCP connect")
        leg.dns_at = self._clock()
        self._increase(PHASE_DNS_LOOKUP, leg.dns_at - leg.start)

    def tcp_connected(self, leg: LegTimes) -> None:
        if leg.tcp_at is not None:
            raise RuntimeError("TCP connect reported twice on the same leg")
        leg.tcp_at = self._clock()
        since = leg.dns_at if leg.dns_at is not None else leg.start
        self._increase(PHASE_TCP_CONNECTION, leg.tcp_at - since)

    def tls_secured(self, leg: LegTimes) -> None:
        if leg.tcp_at is None:
            raise RuntimeError("TLS handshake reported before TCP connect")
        leg.tls_at = self._clock()
        self._increase(PHASE_TLS_HANDSHAKE, leg.tls_at - leg.tcp_at)

    def first_byte(self, leg: LegTimes) -> None:
        """Mark the first readable response data on *leg*.

        Only the first call per leg counts.  The first-byte *phase* is
        recorded once per chain; later legs still get a first-byte mark
        so their content transfer can be measured.
        """
        if leg.first_byte_at is not None:
            return
        leg.first_byte_at = self._clock()
        if self.first_byte_recorded:
            return
        since = max(t for t in (leg.tls_at, leg.tcp_at, leg.start) if t is not None)
        self._increase(PHASE_FIRST_BYTE, leg.first_byte_at - since)
        self.first_byte_recorded = True

    def response_ended(self, leg: LegTimes) -> None:
        if leg.end_at is not None:
            return
        leg.end_at = self._clock()
        if leg.first_byte_at is not None:
            self._increase(PHASE_CONTENT_TRANSFER, leg.end_at - leg.first_byte_at)
