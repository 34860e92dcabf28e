"""Tests for the event scheduler: ordering, ties, horizon and time errors."""

from __future__ import annotations

import math

import pytest

from des import EventScheduler, InvalidTimeError


class TestOrdering:

    def test_dispatches_in_time_order(self) -> None:
        sched = EventScheduler()
        seen = []
        for t in (5.0, 1.0, 3.0):
            sched.schedule(t, lambda t=t: seen.append((t, sched.now)))
        sched.run(until=10.0)
        assert seen == [(1.0, 1.0), (3.0, 3.0), (5.0, 5.0)]

    def test_equal_times_run_in_insertion_order(self) -> None:
        sched = EventScheduler()
        seen = []
        for i in range(10):
            sched.schedule(2.0, lambda i=i: seen.append(i))
        sched.run(until=2.0)
        assert seen == list(range(10))

    def test_event_scheduled_now_from_a_continuation_runs_after_existing_ties(self) -> None:
        sched = EventScheduler()
        seen = []

        def first():
            seen.append("first")
            sched.schedule(sched.now, lambda: seen.append("spawned"))

        sched.schedule(1.0, first)
        sched.schedule(1.0, lambda: seen.append("second"))
        sched.run(until=5.0)
        assert seen == ["first", "second", "spawned"]

    def test_schedule_in_is_relative_to_now(self) -> None:
        sched = EventScheduler()
        seen = []
        sched.schedule(4.0, lambda: sched.schedule_in(2.5, lambda: seen.append(sched.now)))
        sched.run(until=100.0)
        assert seen == [6.5]


class TestHorizon:

    def test_stops_at_horizon_and_sets_clock(self) -> None:
        sched = EventScheduler()
        seen = []
        sched.schedule(5.0, lambda: seen.append(5.0))
        sched.schedule(15.0, lambda: seen.append(15.0))
        assert sched.run(until=10.0) == 10.0
        assert seen == [5.0]
        assert sched.now == 10.0
        assert sched.pending == 1
        assert sched.peek() == 15.0

    def test_event_exactly_at_horizon_is_dispatched(self) -> None:
        sched = EventScheduler()
        seen = []
        sched.schedule(10.0, lambda: seen.append(sched.now))
        sched.run(until=10.0)
        assert seen == [10.0]

    def test_infinite_horizon_drains_queue(self) -> None:
        sched = EventScheduler()
        sched.schedule(3.0, lambda: None)
        sched.run(until=math.inf)
        assert sched.now == 3.0
        assert sched.pending == 0
        assert sched.peek() == math.inf
        assert sched.n_dispatched == 1


class TestInvalidTime:

    def test_schedule_in_the_past_raises(self) -> None:
        sched = EventScheduler()
        sched.run(until=10.0)
        with pytest.raises(InvalidTimeError):
            sched.schedule(4.0, lambda: None)

    def test_nan_time_raises(self) -> None:
        sched = EventScheduler()
        with pytest.raises(InvalidTimeError):
            sched.schedule(float("nan"), lambda: None)

    def test_negative_delay_raises(self) -> None:
        sched = EventScheduler()
        with pytest.raises(InvalidTimeError):
            sched.schedule_in(-1.0, lambda: None)

    def test_horizon_before_clock_raises(self) -> None:
        sched = EventScheduler()
        sched.run(until=10.0)
        with pytest.raises(InvalidTimeError):
            sched.run(until=5.0)
