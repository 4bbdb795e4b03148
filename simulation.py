"""
Deterministic driver for a RaftNetwork.

There is a clock, and events are registered on a timeline. Clock ticks are events too: each one advances the
network by `tick_ms` and schedules the next. Faults, client commands and invariant checks are scheduled the same
way, so a scenario reads as a list of "at time t, do this".

Running twice with the same seed produces *exactly* the same outputs.
"""
import bisect
import logging
from collections import deque
from collections import namedtuple
from typing import Callable

from raftconfig import SIMULATION_TICK_MS
from raftnet import RaftNetwork

logger = logging.getLogger(__name__)

TimeSegment = namedtuple("TimeSegment", ["time", "events"])


class Simulation:
    def __init__(self, network: RaftNetwork, tick_ms: float = SIMULATION_TICK_MS):
        # a sorted collection of (time, deque(callbacks))
        self.agenda = deque()
        self.current_time = 0
        self.network = network
        self.tick_ms = tick_ms
        self._ticking = False

    def run(self, until=None):
        """Process the agenda in order. With `until`, events scheduled later than that stay on the agenda."""
        while self.agenda:
            next_time_segment = self.agenda[0]
            if not next_time_segment.events:
                # left empty by a callback that interrupted the previous run
                self.agenda.popleft()
                continue
            if until is not None and next_time_segment.time > until:
                self.current_time = until
                return
            self.current_time = next_time_segment.time

            callback = next_time_segment.events.popleft()
            # call the thing. It may add new events to the simulation.
            callback()

            # remove time segment if empty
            if not next_time_segment.events:
                self.agenda.popleft()

        logger.info("simulation ended at %s", self.current_time)

    def _add_to_timeline(self, t, callback):
        times = [item.time for item in self.agenda]
        right_index = bisect.bisect_right(times, t)
        if right_index > 0 and times[right_index - 1] == t:
            # add the callback to the list in the existing time segment
            self.agenda[right_index - 1].events.append(callback)
        else:
            # create a new time segment
            self.agenda.insert(right_index, TimeSegment(t, deque([callback])))

    def after_delay(self, delay, callback: Callable[[], None]):
        self._add_to_timeline(t=self.current_time + delay, callback=callback)

    def at(self, t, callback: Callable[[], None]):
        assert t >= self.current_time, "cannot schedule in the past"
        self._add_to_timeline(t=t, callback=callback)

    def every(self, interval, callback: Callable[[], None]):
        """Run `callback` now and then every `interval` until the simulation stops."""

        def repeat():
            callback()
            self.after_delay(interval, repeat)

        self.after_delay(0, repeat)

    def start_clock(self):
        if self._ticking:
            return
        self._ticking = True
        # first tick happens one tick from now, like a real clock would.
        self.after_delay(self.tick_ms, self._tick)

    def _tick(self):
        self.network.advance(self.tick_ms)
        self.after_delay(self.tick_ms, self._tick)

    def stop(self):
        """To be called from a scheduled callback: interrupts the current run."""
        raise StopSimulation()

    def run_until(self, t_end, stop_when: Callable[[], bool] | None = None) -> bool:
        """Run the clock until `t_end`. Returns True if `stop_when` became true before that."""
        self.start_clock()
        # a check left on the agenda by an earlier run must not interfere with the next one.
        active = True

        def check():
            if not active:
                return
            if stop_when():
                raise StopSimulation()
            self.after_delay(self.tick_ms, check)

        if stop_when is not None:
            self.after_delay(0, check)

        try:
            self.run(until=t_end)
        except StopSimulation:
            pass
        active = False

        return stop_when is not None and stop_when()

    def __str__(self):
        return f"Simulation({self.current_time}, {self.agenda})"


class StopSimulation(Exception):
    pass
