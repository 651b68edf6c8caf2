"""
Per-instance stopwatch.

Records, for every node visit, how much elapsed time was active (the node
was computing) versus waiting (the node was suspended on a form, event or
barrier), and keeps rolling totals for the instance.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from flow_engine.core.errors import EngineInvariantError

Clock = Callable[[], float]
WallClock = Callable[[], datetime]


def _wall_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimelineSegment:
    """A closed node visit."""

    node_id: str
    kind: str
    waiting: bool
    started_wall: datetime
    ended_wall: datetime
    duration_ms: float
    active_ms: float
    waiting_ms: float
    attempt: int


@dataclass
class _OpenEntry:
    node_id: str
    kind: str
    waiting: bool
    started_mono: float
    started_wall: datetime
    attempt: int


@dataclass
class TimelineTotals:
    wall_ms: float
    active_ms: float
    waiting_ms: float


class Timeline:
    """
    Stack of open node visits plus closed segments.

    A visit to a suspending node is accounted entirely as waiting time;
    every other visit is active time. The monotonic clock is injectable so
    tests can drive time explicitly.
    """

    def __init__(self, clock: Clock = time.monotonic, wall_clock: WallClock = _wall_now):
        self._clock = clock
        self._wall_clock = wall_clock
        self._started_mono = clock()
        self.started_wall = wall_clock()
        self._active_ms = 0.0
        self._waiting_ms = 0.0
        self._segments: list[TimelineSegment] = []
        self._stack: list[_OpenEntry] = []

    def enter(self, node_id: str, kind: str, waiting: bool, attempt: int = 1) -> None:
        """Open a visit."""
        self._stack.append(
            _OpenEntry(
                node_id=node_id,
                kind=kind,
                waiting=waiting,
                started_mono=self._clock(),
                started_wall=self._wall_clock(),
                attempt=attempt,
            )
        )

    def leave(self) -> TimelineSegment:
        """Close the most recent visit."""
        if not self._stack:
            raise EngineInvariantError("Timeline.leave called with no open node visit")
        entry = self._stack.pop()

        duration_ms = (self._clock() - entry.started_mono) * 1000
        active_ms = 0.0 if entry.waiting else duration_ms
        waiting_ms = duration_ms if entry.waiting else 0.0

        self._active_ms += active_ms
        self._waiting_ms += waiting_ms

        segment = TimelineSegment(
            node_id=entry.node_id,
            kind=entry.kind,
            waiting=entry.waiting,
            started_wall=entry.started_wall,
            ended_wall=self._wall_clock(),
            duration_ms=duration_ms,
            active_ms=active_ms,
            waiting_ms=waiting_ms,
            attempt=entry.attempt,
        )
        self._segments.append(segment)
        return segment

    @property
    def open_visits(self) -> int:
        return len(self._stack)

    @property
    def segments(self) -> list[TimelineSegment]:
        return list(self._segments)

    def totals(self, now: Optional[float] = None) -> TimelineTotals:
        """Wall time since start plus accumulated active/waiting time."""
        current = self._clock() if now is None else now
        return TimelineTotals(
            wall_ms=(current - self._started_mono) * 1000,
            active_ms=self._active_ms,
            waiting_ms=self._waiting_ms,
        )
