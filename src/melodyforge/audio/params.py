"""Automatable audio parameters.

An AudioParam holds a value timeline: immediate sets, linear and exponential
ramps and exponential approaches (set_target_at_time). The control thread
schedules events; the render thread samples the timeline once per quantum
(k-rate) or once per frame (a-rate).

The event list is an immutable tuple that is rebound on every change, so the
render thread always sees a consistent snapshot without taking a lock.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

if TYPE_CHECKING:
    from melodyforge.audio.context import AudioContext

SET = "set"
LINEAR = "linear"
EXPONENTIAL = "exponential"
TARGET = "target"

# set_target_at_time is treated as settled after this many time constants
_TARGET_SETTLE_CONSTANTS = 10.0


class _Event(NamedTuple):
    kind: str
    time: float
    value: float
    time_constant: float = 0.0


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class AudioParam:
    """A Web Audio style parameter bound to a context clock."""

    def __init__(
        self,
        context: AudioContext,
        default: float,
        min_value: float = -math.inf,
        max_value: float = math.inf,
        name: str = "",
    ) -> None:
        self.context = context
        self.name = name
        self.default_value = float(default)
        self.min_value = min_value
        self.max_value = max_value
        self._events: tuple[_Event, ...] = ()

    def __repr__(self) -> str:
        return f"AudioParam({self.name!r}, value={self.value:.4g})"

    # ------------------------------------------------------------------
    # Scheduling (control plane)
    # ------------------------------------------------------------------

    @property
    def value(self) -> float:
        """Value at the context's current time."""
        return self.value_at(self.context.current_time)

    @value.setter
    def value(self, v: float) -> None:
        self.set_value_at_time(v, self.context.current_time)

    def _insert(self, event: _Event) -> None:
        # Same-time events keep insertion order.
        events = [e for e in self._events if e.time <= event.time]
        later = [e for e in self._events if e.time > event.time]
        self._events = tuple(events + [event] + later)

    def set_value_at_time(self, value: float, start_time: float) -> AudioParam:
        self._insert(_Event(SET, float(start_time), self._clamp(value)))
        return self

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> AudioParam:
        self._insert(_Event(LINEAR, float(end_time), self._clamp(value)))
        return self

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float) -> AudioParam:
        if value == 0.0:
            raise ValueError("exponential ramp target must be non-zero")
        self._insert(_Event(EXPONENTIAL, float(end_time), self._clamp(value)))
        return self

    def set_target_at_time(
        self, target: float, start_time: float, time_constant: float
    ) -> AudioParam:
        if time_constant <= 0.0:
            return self.set_value_at_time(target, start_time)
        self._insert(_Event(TARGET, float(start_time), self._clamp(target), float(time_constant)))
        return self

    def cancel_scheduled_values(self, start_time: float) -> AudioParam:
        self._events = tuple(e for e in self._events if e.time < start_time)
        return self

    def cancel_and_hold_at_time(self, t: float) -> AudioParam:
        """Freeze the timeline at ``t`` and drop everything scheduled after it.

        Earlier events are discarded as well; the single hold event fully
        describes the value from ``t`` on.
        """
        held = self.value_at(t)
        self._events = (_Event(SET, float(t), held),)
        return self

    def _clamp(self, value: float) -> float:
        return clamp(float(value), self.min_value, self.max_value)

    # ------------------------------------------------------------------
    # Evaluation (render path)
    # ------------------------------------------------------------------

    def value_at(self, t: float) -> float:
        """Evaluate the automation timeline at time ``t`` (seconds)."""
        events = self._events
        value = self.default_value
        prev_time = 0.0
        for i, ev in enumerate(events):
            if ev.kind == TARGET:
                if ev.time > t:
                    break
                start_value = value
                next_time = events[i + 1].time if i + 1 < len(events) else math.inf
                if t < next_time:
                    return _approach(start_value, ev.value, t - ev.time, ev.time_constant)
                value = _approach(start_value, ev.value, next_time - ev.time, ev.time_constant)
                prev_time = next_time
                continue

            if ev.time <= t:
                value = ev.value
                prev_time = ev.time
                continue

            # ev.time > t: only ramps influence values before their end time
            if ev.kind == LINEAR:
                span = ev.time - prev_time
                frac = (t - prev_time) / span if span > 0 else 1.0
                return value + (ev.value - value) * frac
            if ev.kind == EXPONENTIAL:
                span = ev.time - prev_time
                frac = (t - prev_time) / span if span > 0 else 1.0
                if value == 0.0 or (value > 0) != (ev.value > 0):
                    return value
                return value * (ev.value / value) ** frac
            break
        return value

    def is_static(self, t0: float, t1: float) -> bool:
        """True when no automation changes the value in [t0, t1)."""
        events = self._events
        if not events:
            return True
        last = events[-1]
        if last.kind == TARGET:
            return last.time + _TARGET_SETTLE_CONSTANTS * last.time_constant <= t0
        return last.time <= t0

    def k_rate_value(self, t0: float) -> float:
        return self.value_at(t0)

    def a_rate_values(self, t0: float, frames: int, sample_rate: int) -> np.ndarray | float:
        """Per-frame values for one render quantum (scalar when constant)."""
        t1 = t0 + frames / sample_rate
        if self.is_static(t0, t1):
            return self.value_at(t0)
        times = t0 + np.arange(frames) / sample_rate
        return np.fromiter((self.value_at(float(t)) for t in times), dtype=np.float32, count=frames)


def _approach(start: float, target: float, elapsed: float, time_constant: float) -> float:
    return target + (start - target) * math.exp(-elapsed / time_constant)
