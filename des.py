#!/usr/bin/env python
# coding: utf-8
# Discrete-event kernel used by the treatment centre model (model.py)

# # Simulation kernel
#
# Single-threaded, cooperative event loop. Patients (entities) execute a
# pathway of steps and only suspend at a timed delay or when seizing a full
# resource; resumption is always scheduled back onto the same scheduler.
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Deque, Any, Tuple, Callable, Optional, Iterable, Mapping, Union, Hashable
import math
import heapq
import itertools
import zlib
from collections import deque

import numpy as np
import pandas as pd


# ## Errors

class ConfigurationError(ValueError):
    """Invalid model configuration. Always raised before simulated time advances."""


class CapacityError(ConfigurationError):
    """A resource was configured with a capacity < 1."""


class UnknownResourceError(ConfigurationError):
    """A pathway step names a resource that does not exist."""


class DegenerateRateError(RuntimeError):
    """The arrival-rate table has a maximum rate of zero; thinning can never accept."""


class InvalidTimeError(RuntimeError):
    """An event was scheduled before the current clock time."""


def _no_trace(*args, **kwargs) -> None:
    return None


# ## Event scheduler

class EventScheduler:
    """
    Time-ordered queue of pending continuations.

    Events run in non-decreasing time; events at equal times run in the order
    they were scheduled (FIFO). That tie-break is the only ordering rule for
    simultaneous events, which keeps a seeded run deterministic.
    """

    def __init__(self, *, trace: Callable[..., None] = _no_trace):
        self.trace = trace
        self._now: float = 0.0
        self._queue: List[Tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        self.n_dispatched: int = 0

    @property
    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        return len(self._queue)

    def peek(self) -> float:
        """Time of the next pending event, or inf when the queue is empty."""
        return self._queue[0][0] if self._queue else math.inf

    def schedule(self, at_time: float, continuation: Callable[[], None]) -> None:
        t = float(at_time)
        if math.isnan(t) or t < self._now:
            raise InvalidTimeError(
                f"cannot schedule at t={at_time!r}: clock is already at {self._now!r}"
            )
        heapq.heappush(self._queue, (t, next(self._seq), continuation))

    def schedule_in(self, delay: float, continuation: Callable[[], None]) -> None:
        d = float(delay)
        if math.isnan(d) or d < 0:
            raise InvalidTimeError(f"delay must be >= 0, got {delay!r} at t={self._now!r}")
        self.schedule(self._now + d, continuation)

    def run(self, until: float) -> float:
        """
        Dispatch events until the queue is empty or the next event lies beyond
        `until`. The clock is then set to `until` (when finite).
        """
        horizon = float(until)
        if horizon < self._now:
            raise InvalidTimeError(f"horizon {until!r} is before the clock ({self._now!r})")

        self.trace("Scheduler run", start=self._now, until=horizon, pending=len(self._queue))
        while self._queue and self._queue[0][0] <= horizon:
            t, _seq, continuation = heapq.heappop(self._queue)
            self._now = t
            self.n_dispatched += 1
            continuation()

        if not math.isinf(horizon):
            self._now = horizon
        self.trace("Scheduler stopped", now=self._now, dispatched=self.n_dispatched,
                   still_pending=len(self._queue))
        return self._now


# ## Random streams

class RandomStreams:
    """
    One independent generator per named sampling site.

    Seeds are derived from (master seed, site name), so the numbers drawn at
    one site never depend on how many draws any other site has made. Each
    site should have exactly one consumer: either a distribution seeded with
    `seed_for(site)` or the generator returned by `stream_for(site)`.
    """

    def __init__(self, master_seed: int, *, trace: Callable[..., None] = _no_trace):
        self.master_seed = int(master_seed)
        self.trace = trace
        self._streams: Dict[str, np.random.Generator] = {}

    @staticmethod
    def site_key(site: str) -> int:
        # crc32 rather than hash(): str hashes are salted per process
        return zlib.crc32(str(site).encode("utf-8"))

    def seed_for(self, site: str) -> np.random.SeedSequence:
        return np.random.SeedSequence([self.master_seed, self.site_key(site)])

    def stream_for(self, site: str) -> np.random.Generator:
        rng = self._streams.get(site)
        if rng is None:
            rng = np.random.default_rng(self.seed_for(site))
            self._streams[site] = rng
            self.trace("Random stream created", site=site, master_seed=self.master_seed)
        return rng

    @property
    def sites(self) -> List[str]:
        return sorted(self._streams)


# ## Entities and attributes

class AttributeStore:
    """Per-entity key -> value scratch space (milestone timestamps, sampled durations...)."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __getitem__(self, key: str) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"attribute {key!r} not set; known: {sorted(self._values)}") from None

    def __len__(self) -> int:
        return len(self._values)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def elapsed(self, since_key: str, now: float) -> float:
        """Time elapsed between the timestamp stored under `since_key` and `now`."""
        return float(now) - float(self[since_key])

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)


@dataclass(frozen=True)
class EntitySnapshot:
    entity_id: int
    name: str
    created_time: float
    completed: bool
    end_time: Optional[float]
    attributes: Dict[str, Any]


@dataclass(eq=False)
class Entity:
    id: int
    name: str
    created_time: float
    attributes: AttributeStore = field(default_factory=AttributeStore, repr=False)
    completed: bool = False
    end_time: Optional[float] = None
    # stack of (pathway, index of next step); sub-pathways push a frame
    cursor: List[Tuple["Pathway", int]] = field(default_factory=list, repr=False)

    def snapshot(self) -> EntitySnapshot:
        return EntitySnapshot(
            entity_id=self.id,
            name=self.name,
            created_time=self.created_time,
            completed=self.completed,
            end_time=self.end_time,
            attributes=self.attributes.snapshot(),
        )


# ## Monitoring

@dataclass(frozen=True)
class ResourceEvent:
    entity_id: int
    resource: str
    enqueue_time: float
    start_time: float
    end_time: float

    @property
    def wait(self) -> float:
        return self.start_time - self.enqueue_time

    @property
    def activity_time(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class ResourceState:
    time: float
    resource: str
    server: int
    queue: int
    capacity: Optional[int]


@dataclass(frozen=True)
class LogEntry:
    time: float
    entity: str
    message: str


@dataclass
class MonitoringRecord:
    """
    Append-only log of one replication. Frozen by `close()`; the reporting
    layer reads it through `to_frames()`.
    """
    replication: int = 0
    seed: Optional[int] = None
    horizon: float = 0.0
    arrivals: List[EntitySnapshot] = field(default_factory=list)
    resource_events: List[ResourceEvent] = field(default_factory=list)
    resource_states: List[ResourceState] = field(default_factory=list)
    log: List[LogEntry] = field(default_factory=list)
    capacities: Dict[str, Optional[int]] = field(default_factory=dict)
    busy_time: Dict[str, float] = field(default_factory=dict)
    closed: bool = False

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError(f"monitoring record for replication {self.replication} is closed")

    def add_arrival(self, snap: EntitySnapshot) -> None:
        self._check_open()
        self.arrivals.append(snap)

    def add_resource_event(self, event: ResourceEvent) -> None:
        self._check_open()
        self.resource_events.append(event)

    def add_resource_state(self, state: ResourceState) -> None:
        self._check_open()
        self.resource_states.append(state)

    def add_log(self, entry: LogEntry) -> None:
        self._check_open()
        self.log.append(entry)

    def close(self, horizon: float, pools: Iterable["ResourcePool"]) -> None:
        self._check_open()
        self.horizon = float(horizon)
        for pool in pools:
            self.capacities[pool.name] = pool.capacity
            self.busy_time[pool.name] = pool.busy_time_at(self.horizon)
        self.arrivals.sort(key=lambda s: s.entity_id)
        self.closed = True

    # -------- derived views --------

    @property
    def completed(self) -> List[EntitySnapshot]:
        return [a for a in self.arrivals if a.completed]

    def utilisation(self, resource: str) -> float:
        cap = self.capacities[resource]
        if cap is None or self.horizon <= 0:
            return float("nan")
        return min(1.0, max(0.0, self.busy_time[resource] / (cap * self.horizon)))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_frames(self) -> Dict[str, pd.DataFrame]:
        arrivals = pd.DataFrame(
            [{"entity_id": a.entity_id, "name": a.name, "created_time": a.created_time,
              "end_time": a.end_time, "completed": a.completed} for a in self.arrivals],
            columns=["entity_id", "name", "created_time", "end_time", "completed"],
        )
        attributes = pd.DataFrame(
            [{"entity_id": a.entity_id, "key": k, "value": v}
             for a in self.arrivals for k, v in a.attributes.items()],
            columns=["entity_id", "key", "value"],
        )
        resources = pd.DataFrame(
            [{**asdict(e), "wait": e.wait, "activity_time": e.activity_time}
             for e in self.resource_events],
            columns=["entity_id", "resource", "enqueue_time", "start_time", "end_time",
                     "wait", "activity_time"],
        )
        states = pd.DataFrame([asdict(s) for s in self.resource_states],
                              columns=["time", "resource", "server", "queue", "capacity"])
        log = pd.DataFrame([asdict(l) for l in self.log], columns=["time", "entity", "message"])
        for df in (arrivals, attributes, resources, states, log):
            df["replication"] = self.replication
        return {"arrivals": arrivals, "attributes": attributes, "resources": resources,
                "resource_states": states, "log": log}


# ## Resources

class ResourcePool:
    """
    Named set of identical servers with a FIFO wait queue (no priority, no
    preemption). `capacity=None` gives an unbounded pool that never queues.
    """

    def __init__(
        self,
        name: str,
        capacity: Optional[int],
        scheduler: EventScheduler,
        record: Optional[MonitoringRecord] = None,
        *,
        trace: Callable[..., None] = _no_trace,
    ):
        if capacity is not None:
            if isinstance(capacity, bool) or not isinstance(capacity, (int, np.integer)) or capacity <= 0:
                raise CapacityError(
                    f"resource {name!r}: capacity must be a positive integer, got {capacity!r}"
                )
        self.name = str(name)
        self.capacity: Optional[int] = None if capacity is None else int(capacity)
        self.scheduler = scheduler
        self.record = record
        self.trace = trace

        self.occupied: int = 0
        self.busy_time: float = 0.0
        self._queue: Deque[Tuple[Entity, float, Callable[[], None]]] = deque()
        self._in_service: Dict[int, Tuple[float, float]] = {}  # entity id -> (enqueue, start)

    def __repr__(self) -> str:
        return (f"ResourcePool({self.name!r}, capacity={self.capacity}, "
                f"occupied={self.occupied}, queue={len(self._queue)})")

    @property
    def unbounded(self) -> bool:
        return self.capacity is None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def has_free_server(self) -> bool:
        return self.capacity is None or self.occupied < self.capacity

    def seize(self, entity: Entity, resume: Callable[[], None]) -> bool:
        """
        Returns True when a server was free and is now held by `entity`.
        Otherwise the entity joins the back of the queue and `resume` is
        scheduled once a release hands it a server.
        """
        if entity.id in self._in_service:
            raise RuntimeError(f"{entity.name} already holds {self.name!r}")
        now = self.scheduler.now
        if self.has_free_server():
            self._grant(entity, enqueue_time=now)
            return True
        self._queue.append((entity, now, resume))
        self.trace("Queued", resource=self.name, entity=entity.name, t=now, queue=len(self._queue))
        self._monitor()
        return False

    def release(self, entity: Entity) -> None:
        try:
            enqueue_time, start_time = self._in_service.pop(entity.id)
        except KeyError:
            raise RuntimeError(f"{entity.name} releases {self.name!r} without holding it") from None

        now = self.scheduler.now
        self.occupied -= 1
        self.busy_time += now - start_time
        if self.record is not None:
            self.record.add_resource_event(ResourceEvent(
                entity_id=entity.id,
                resource=self.name,
                enqueue_time=enqueue_time,
                start_time=start_time,
                end_time=now,
            ))
        self.trace("Released", resource=self.name, entity=entity.name, t=now)

        if self._queue:
            nxt, nxt_enqueue, resume = self._queue.popleft()
            self._grant(nxt, enqueue_time=nxt_enqueue)
            self.scheduler.schedule(now, resume)
        else:
            self._monitor()

    def busy_time_at(self, time: float) -> float:
        """Completed busy time plus service still in progress at `time`."""
        open_service = sum(max(0.0, time - start) for _enq, start in self._in_service.values())
        return self.busy_time + open_service

    def utilisation(self, horizon: float) -> float:
        if self.capacity is None or horizon <= 0:
            return float("nan")
        return min(1.0, max(0.0, self.busy_time_at(horizon) / (self.capacity * horizon)))

    def _grant(self, entity: Entity, *, enqueue_time: float) -> None:
        now = self.scheduler.now
        self.occupied += 1
        self._in_service[entity.id] = (enqueue_time, now)
        self.trace("Seized", resource=self.name, entity=entity.name, t=now,
                   wait=now - enqueue_time, occupied=self.occupied)
        self._monitor()

    def _monitor(self) -> None:
        if self.record is not None:
            self.record.add_resource_state(ResourceState(
                time=self.scheduler.now,
                resource=self.name,
                server=self.occupied,
                queue=len(self._queue),
                capacity=self.capacity,
            ))


# ## Pathways
#
# Steps are tagged variants. A value-producing argument is either a plain
# value or a callable taking the entity; callables are evaluated every time
# the step executes, so two patients on the same pathway draw separate samples.

Thunk = Union[Any, Callable[[Entity], Any]]


def evaluate(value: Thunk, entity: Entity) -> Any:
    return value(entity) if callable(value) else value


@dataclass(frozen=True, eq=False)
class SetAttribute:
    key: str
    value: Thunk


@dataclass(frozen=True, eq=False)
class Delay:
    duration: Thunk


@dataclass(frozen=True, eq=False)
class Seize:
    resource: str


@dataclass(frozen=True, eq=False)
class Release:
    resource: str


@dataclass(frozen=True, eq=False)
class Branch:
    """
    Evaluate `classifier(entity)` when the step runs. If the outcome maps to a
    pathway, that pathway runs and control then returns to the next step;
    outcomes mapped to None (or not mapped at all) continue directly.
    """
    classifier: Callable[[Entity], Hashable]
    outcomes: Mapping[Hashable, Optional["Pathway"]]

    def __post_init__(self) -> None:
        if not callable(self.classifier):
            raise ConfigurationError(f"branch classifier must be callable, got {self.classifier!r}")


@dataclass(frozen=True, eq=False)
class Log:
    message: Thunk


Step = Union[SetAttribute, Delay, Seize, Release, Branch, Log]


@dataclass(frozen=True, eq=False)
class Pathway:
    name: str
    steps: Tuple[Step, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def walk(self) -> Iterable["Pathway"]:
        """This pathway and every pathway reachable through its branches (each once)."""
        seen: Dict[int, Pathway] = {}
        stack = [self]
        while stack:
            p = stack.pop()
            if id(p) in seen:
                continue
            seen[id(p)] = p
            for step in p.steps:
                if isinstance(step, Branch):
                    stack.extend(t for t in step.outcomes.values() if t is not None)
        return list(seen.values())

    def resources(self) -> List[str]:
        names = {
            step.resource
            for p in self.walk() for step in p.steps
            if isinstance(step, (Seize, Release))
        }
        return sorted(names)


class PathwayEngine:
    """
    Runs entities through pathways on a scheduler, seizing and releasing the
    given resource pools and writing to the monitoring record.
    """

    START_KEY = "start_time"
    TOTAL_KEY = "total_time"

    def __init__(
        self,
        scheduler: EventScheduler,
        resources: Mapping[str, ResourcePool],
        record: MonitoringRecord,
        *,
        trace: Callable[..., None] = _no_trace,
    ):
        self.scheduler = scheduler
        self.resources = dict(resources)
        self.record = record
        self.trace = trace
        self.entities: List[Entity] = []
        self._ids = itertools.count(1)
        self._validated: set = set()

    def validate(self, pathway: Pathway) -> None:
        """Raise UnknownResourceError if any reachable step names an unknown resource."""
        if id(pathway) in self._validated:
            return
        for p in pathway.walk():
            for i, step in enumerate(p.steps):
                if isinstance(step, (Seize, Release)) and step.resource not in self.resources:
                    raise UnknownResourceError(
                        f"pathway {p.name!r} step {i} ({type(step).__name__}) references unknown "
                        f"resource {step.resource!r}; known: {sorted(self.resources)}"
                    )
        self._validated.add(id(pathway))

    def start(self, pathway: Pathway, *, name_prefix: str = "entity") -> Entity:
        """Create an entity at the current clock time and schedule its first step."""
        self.validate(pathway)
        eid = next(self._ids)
        entity = Entity(id=eid, name=f"{name_prefix}{eid}", created_time=self.scheduler.now)
        entity.cursor.append((pathway, 0))
        self.entities.append(entity)
        self.scheduler.schedule(entity.created_time, lambda: self._advance(entity))
        return entity

    @property
    def in_flight(self) -> List[Entity]:
        return [e for e in self.entities if not e.completed]

    def close(self) -> None:
        """Snapshot entities still in flight; they stay incomplete."""
        for entity in self.in_flight:
            self.record.add_arrival(entity.snapshot())
        self.trace("Entities in flight at horizon", n=len(self.in_flight), t=self.scheduler.now)

    # -------- internal --------

    def _advance(self, entity: Entity) -> None:
        resume = lambda: self._advance(entity)
        while entity.cursor:
            pathway, idx = entity.cursor[-1]
            if idx >= len(pathway.steps):
                entity.cursor.pop()
                continue
            entity.cursor[-1] = (pathway, idx + 1)
            step = pathway.steps[idx]

            if isinstance(step, SetAttribute):
                entity.attributes.set(step.key, evaluate(step.value, entity))
            elif isinstance(step, Delay):
                self.scheduler.schedule_in(float(evaluate(step.duration, entity)), resume)
                return
            elif isinstance(step, Seize):
                if not self.resources[step.resource].seize(entity, resume):
                    return
            elif isinstance(step, Release):
                self.resources[step.resource].release(entity)
            elif isinstance(step, Branch):
                target = step.outcomes.get(step.classifier(entity))
                if target is not None:
                    entity.cursor.append((target, 0))
            elif isinstance(step, Log):
                msg = str(evaluate(step.message, entity))
                self.record.add_log(LogEntry(time=self.scheduler.now, entity=entity.name, message=msg))
                self.trace(msg, entity=entity.name, t=self.scheduler.now)
            else:
                raise TypeError(f"unknown pathway step {step!r} in {pathway.name!r}")

        self._complete(entity)

    def _complete(self, entity: Entity) -> None:
        now = self.scheduler.now
        entity.completed = True
        entity.end_time = now
        start = entity.attributes.get(self.START_KEY, entity.created_time)
        entity.attributes.set(self.TOTAL_KEY, now - start)
        self.record.add_arrival(entity.snapshot())
