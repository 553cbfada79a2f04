import math
import random
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

HISTORY_SIZE = 30
DEBOUNCE_SECONDS = 5.0
GAUGE_MAX_FLOW = 250.0
ZONE_MARGIN = 0.2

SIM_BASE_FLOW = 120.0
SIM_TREND = 1.0
SIM_MIN_FLOW = 60.0
SIM_MAX_FLOW = 200.0
SIM_STEP = 5.0
SIM_TREND_CHANGE_PROB = 0.05
SIM_SPIKE_PROB = 0.10
SIM_SPIKE = 50.0


def round1(value: float) -> float:
    # half away from zero, matching the panel's display rounding
    return math.copysign(math.floor(abs(value) * 10 + 0.5) / 10, value)


def format_flow(value: Optional[float]) -> str:
    if value is None:
        return "-- L/min"
    return f"{round1(value):.1f} L/min"


@dataclass(frozen=True)
class Reading:
    ts: float
    flow_rate: float
    total_volume: Optional[float] = None
    source: str = "simulated"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "flow_rate": self.flow_rate,
            "total_volume": self.total_volume,
            "source": self.source,
        }


class FlowStats:
    """Bounded reading history with session-wide extrema.

    min/max track every value seen since the last reset, the average only
    covers what is still in the history buffer.
    """

    def __init__(self, size: int = HISTORY_SIZE) -> None:
        self.size = size
        self.history: Deque[Reading] = deque(maxlen=size)
        self.min_flow: float = math.inf
        self.max_flow: float = 0.0

    def record(self, reading: Reading) -> Dict[str, Any]:
        stored = replace(reading, flow_rate=round1(reading.flow_rate))
        self.history.append(stored)
        self.min_flow = min(self.min_flow, stored.flow_rate)
        self.max_flow = max(self.max_flow, stored.flow_rate)
        return self.snapshot()

    def average(self) -> Optional[float]:
        if not self.history:
            return None
        return sum(r.flow_rate for r in self.history) / len(self.history)

    def snapshot(self) -> Dict[str, Any]:
        avg = self.average()
        seen = not math.isinf(self.min_flow)
        min_flow = self.min_flow if seen else None
        max_flow = self.max_flow if seen else None
        return {
            "min": min_flow,
            "max": max_flow,
            "average": avg,
            "count": len(self.history),
            "min_display": format_flow(min_flow),
            "avg_display": format_flow(avg),
            "max_display": format_flow(max_flow),
        }

    def recent(self, count: int) -> List[Reading]:
        if count <= 0:
            return []
        return list(self.history)[-count:][::-1]

    def reset(self) -> None:
        self.history.clear()
        self.min_flow = math.inf
        self.max_flow = 0.0


class WarningState(str, Enum):
    NORMAL = "normal"
    PENDING = "pending_warning"
    WARNING = "warning"


class ThresholdPolicy(str, Enum):
    IMMEDIATE = "immediate"
    DEBOUNCED = "debounced"

    @property
    def above_is_bad(self) -> bool:
        return self is ThresholdPolicy.IMMEDIATE

    @property
    def debounce_seconds(self) -> float:
        return 0.0 if self is ThresholdPolicy.IMMEDIATE else DEBOUNCE_SECONDS


@dataclass(frozen=True)
class Transition:
    previous: WarningState
    state: WarningState
    ts: float
    flow_rate: float
    threshold: float

    @property
    def warning(self) -> bool:
        return self.state is WarningState.WARNING

    def as_dict(self) -> Dict[str, Any]:
        return {
            "previous": self.previous.value,
            "state": self.state.value,
            "ts": self.ts,
            "flow_rate": self.flow_rate,
            "threshold": self.threshold,
        }


class ThresholdEngine:
    """Normal/Warning state machine for one flow channel.

    Callers pass the evaluation time in; nothing here reads the clock.
    """

    def __init__(self, policy: ThresholdPolicy = ThresholdPolicy.IMMEDIATE, debounce_seconds: Optional[float] = None) -> None:
        self.policy = ThresholdPolicy(policy)
        self.debounce_seconds = self.policy.debounce_seconds if debounce_seconds is None else float(debounce_seconds)
        self.state = WarningState.NORMAL
        self.condition_start: Optional[float] = None

    @property
    def warning_active(self) -> bool:
        return self.state is WarningState.WARNING

    def is_bad(self, flow: float, threshold: float) -> bool:
        if self.policy.above_is_bad:
            return flow > threshold
        return flow < threshold

    def evaluate(self, flow: float, threshold: float, now: float) -> Optional[Transition]:
        if self.is_bad(flow, threshold):
            if self.state is WarningState.WARNING:
                return None
            if self.condition_start is None:
                self.condition_start = now
            if now - self.condition_start >= self.debounce_seconds:
                return self._move(WarningState.WARNING, now, flow, threshold)
            self.state = WarningState.PENDING
            return None

        self.condition_start = None
        if self.state is WarningState.WARNING:
            return self._move(WarningState.NORMAL, now, flow, threshold)
        self.state = WarningState.NORMAL
        return None

    def _move(self, state: WarningState, now: float, flow: float, threshold: float) -> Transition:
        previous = self.state
        self.state = state
        self.condition_start = None
        return Transition(previous=previous, state=state, ts=now, flow_rate=flow, threshold=threshold)

    def reset(self) -> None:
        self.state = WarningState.NORMAL
        self.condition_start = None

    def clear(self, flow: float, threshold: float, now: float) -> Optional[Transition]:
        """Drop back to Normal, reporting the edge if a warning was active."""
        if self.state is WarningState.WARNING:
            return self._move(WarningState.NORMAL, now, flow, threshold)
        self.reset()
        return None

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "warning": self.warning_active,
            "condition_start": self.condition_start,
            "policy": self.policy.value,
            "debounce_seconds": self.debounce_seconds,
        }


class FlowSimulator:
    """Bounded random walk used when no flow meter URL is configured."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()
        self.base_flow = SIM_BASE_FLOW
        self.trend = SIM_TREND

    def next_flow(self) -> float:
        self.base_flow += self.rng.uniform(-SIM_STEP, SIM_STEP) + self.trend
        if self.rng.random() < SIM_TREND_CHANGE_PROB:
            self.trend = self.rng.uniform(-1.0, 1.0)
        self.base_flow = max(SIM_MIN_FLOW, min(SIM_MAX_FLOW, self.base_flow))
        if self.rng.random() < SIM_SPIKE_PROB:
            return self.base_flow + SIM_SPIKE
        return self.base_flow

    def next_reading(self, now: float) -> Reading:
        return Reading(ts=now, flow_rate=self.next_flow(), source="simulated")


def gauge_percent(flow: Optional[float]) -> float:
    if flow is None:
        return 0.0
    return min(flow / GAUGE_MAX_FLOW * 100.0, 100.0)


def flow_zone(flow: Optional[float], threshold: float, policy: ThresholdPolicy) -> str:
    if flow is None:
        return "normal"
    if policy.above_is_bad:
        if flow > threshold:
            return "danger"
        if flow > threshold * (1 - ZONE_MARGIN):
            return "warning"
        return "normal"
    if flow < threshold:
        return "danger"
    if flow < threshold * (1 + ZONE_MARGIN):
        return "warning"
    return "normal"
