#!/usr/bin/env python
# coding: utf-8
# VERSION 1 MODEL - URGENT CARE TREATMENT CENTRE, NSPP ARRIVALS, PER-SITE STREAMS

# # Treatment centre model
#
# Patients arrive following a non-stationary Poisson process, are triaged and
# then follow either the trauma pathway (stabilisation, then treatment) or the
# non-trauma pathway (registration, examination, then optional treatment).
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Any, Tuple, Callable, Optional, Iterable, Sequence, Union
from enum import Enum
from pathlib import Path
from collections import defaultdict
import math
import copy
from sim_tools.distributions import Exponential, Normal, Lognormal, Bernoulli, Uniform

import numpy as np
import pandas as pd

from des import (
    ConfigurationError,
    DegenerateRateError,
    EventScheduler,
    RandomStreams,
    ResourcePool,
    MonitoringRecord,
    PathwayEngine,
    Pathway,
    SetAttribute,
    Delay,
    Seize,
    Release,
    Branch,
    Log,
)

# resource names
TRIAGE = "triage_bay"
REGISTRATION = "registration_clerk"
EXAMINATION = "examination_room"
TRAUMA = "trauma_room"
NT_CUBICLE = "nontrauma_cubicle"
TRAUMA_CUBICLE = "trauma_cubicle"
RESOURCES = (TRIAGE, REGISTRATION, EXAMINATION, TRAUMA, NT_CUBICLE, TRAUMA_CUBICLE)

# activity -> distribution family
DURATION_FAMILIES: Dict[str, str] = {
    "triage": "exponential",
    "registration": "lognormal",
    "examination": "normal",
    "trauma": "exponential",
    "trauma_treat": "lognormal",
    "nontrauma_treat": "lognormal",
}

# Hourly arrival rates, 06:00 to 24:00
DEFAULT_ARRIVAL_PROFILE: Tuple[float, ...] = (
    2.37, 2.80, 8.83, 10.43, 14.80, 26.27, 31.40, 18.07, 16.47,
    12.03, 11.60, 28.87, 18.03, 11.50, 5.10, 8.38, 7.67, 5.00,
)


@dataclass
class Config:

    horizon_minutes: float = 60.0 * 19   # results collection period
    n_reps: int = 5
    base_seed: int = 42

    # ================= Capacity =================
    # Each instance gets its own new dictionary
    capacities: Dict[str, int] = field(
        default_factory=lambda: {
            TRIAGE: 1,
            REGISTRATION: 1,
            EXAMINATION: 3,
            TRAUMA: 2,
            NT_CUBICLE: 1,
            TRAUMA_CUBICLE: 1,
        }
    )

    # ================= Activity durations =================
    # minutes. exponential: mean; lognormal: mean, sd; normal: mean, var, min
    duration_params: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {
            "triage":          {"mean": 3.0},
            "registration":    {"mean": 5.0, "sd": math.sqrt(2.0)},
            "examination":     {"mean": 16.0, "var": 3.0, "min": 0.5},
            "trauma":          {"mean": 90.0},
            "trauma_treat":    {"mean": 30.0, "sd": 2.0},
            "nontrauma_treat": {"mean": 13.3, "sd": math.sqrt(2.0)},
        }
    )

    # ================= Branching =================
    prob_trauma: float = 0.12
    non_trauma_treat_p: float = 0.6

    # ================= Arrivals =================
    # arrivals per hour for consecutive buckets; wraps past the last bucket
    arrival_profile: List[float] = field(default_factory=lambda: list(DEFAULT_ARRIVAL_PROFILE))
    arrival_bucket_minutes: float = 60.0

    # ================= utils =======================
    TRACE: bool = False

    def trace(self, *args, **kwargs) -> None:
        if not getattr(self, "TRACE", False): return
        msg = " ".join(str(a) for a in args)
        if kwargs:
            details = " ".join(f"{k}={v!r}" for k,v in kwargs.items())
            print(f"[TRACE] {msg} {details}")
        else:
            print(f"[TRACE] {msg}")


    #################################################
    # ================= VALIDATION  =================
    #################################################


    def validate(self, debug: bool = False) -> None:
        """
        Validate configuration for the treatment centre simulation.

        Args:
            debug (bool): If True, prints detailed debug information at each step.

        Raises:
            ConfigurationError: listing every problem found.
        """
        errors = []
        warnings = []

        def dbg(msg):
            if debug:
                print(f"[validate] {msg}")

        def err(msg):
            errors.append(str(msg))
            if debug:
                print(f"[ERROR] {msg}")

        def warn(msg):
            warnings.append(str(msg))
            if debug:
                print(f"[WARN] {msg}")

        dbg("Starting config validation...")

        # -------------------- basic scalars --------------------
        dbg("Checking horizon, replications and seed...")
        try:
            horizon = float(self.horizon_minutes)
            if not horizon > 0 or math.isinf(horizon):
                err(f"horizon_minutes must be a finite number > 0, got {self.horizon_minutes!r}")
        except (TypeError, ValueError):
            err(f"horizon_minutes must be numeric, got {self.horizon_minutes!r}")

        if isinstance(self.n_reps, bool) or not isinstance(self.n_reps, int) or self.n_reps < 1:
            err(f"n_reps must be an int >= 1, got {self.n_reps!r}")

        if isinstance(self.base_seed, bool) or not isinstance(self.base_seed, int) or self.base_seed < 0:
            err(f"base_seed must be an int >= 0, got {self.base_seed!r}")
        dbg(f"horizon={self.horizon_minutes}, n_reps={self.n_reps}, base_seed={self.base_seed}")

        # -------------------- capacities --------------------
        dbg("Checking capacities...")
        try:
            caps = dict(self.capacities or {})
        except (TypeError, ValueError):
            err(f"capacities must be a mapping of resource -> int, got {self.capacities!r}")
            caps = dict.fromkeys(RESOURCES, 1)
        for name in RESOURCES:
            if name not in caps:
                err(f"capacities[{name!r}] is missing")
                continue
            n = caps[name]
            if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n < 1:
                err(f"capacities[{name!r}] must be an int >= 1, got {n!r}")
            elif n >= 10_000:
                warn(f"capacities[{name!r}]={n} treated as effectively unlimited")
            dbg(f"capacities[{name}]={n!r}")
        for name in sorted(set(caps) - set(RESOURCES)):
            warn(f"capacities[{name!r}] is not used by any pathway")

        # -------------------- durations --------------------
        dbg("Checking duration parameters...")
        try:
            params = dict(self.duration_params or {})
        except (TypeError, ValueError):
            err(f"duration_params must be a mapping of activity -> dict, got {self.duration_params!r}")
            params = {}
        for kind, family in DURATION_FAMILIES.items():
            p = params.get(kind)
            if not isinstance(p, dict):
                err(f"duration_params[{kind!r}] must be a dict, got {p!r}")
                continue
            try:
                mean = float(p["mean"])
            except (KeyError, TypeError, ValueError):
                err(f"duration_params[{kind!r}]['mean'] missing or not numeric")
                continue
            if mean <= 0:
                err(f"duration_params[{kind!r}]['mean'] must be > 0, got {mean!r}")
            if family == "lognormal":
                sd = p.get("sd")
                if not isinstance(sd, (int, float)) or isinstance(sd, bool) or sd <= 0:
                    err(f"duration_params[{kind!r}]['sd'] must be > 0 (lognormal), got {sd!r}")
            elif family == "normal":
                var = p.get("var")
                if not isinstance(var, (int, float)) or isinstance(var, bool) or var <= 0:
                    err(f"duration_params[{kind!r}]['var'] must be > 0 (normal), got {var!r}")
                try:
                    if float(p.get("min", 0.0)) < 0:
                        err(f"duration_params[{kind!r}]['min'] must be >= 0, got {p.get('min')!r}")
                except (TypeError, ValueError):
                    err(f"duration_params[{kind!r}]['min'] must be numeric, got {p.get('min')!r}")
            dbg(f"duration_params[{kind}]={p} ({family})")

        # -------------------- probabilities --------------------
        dbg("Checking branch probabilities...")
        for name in ("prob_trauma", "non_trauma_treat_p"):
            v = getattr(self, name)
            try:
                fv = float(v)
            except (TypeError, ValueError):
                err(f"{name} must be numeric, got {v!r}")
                continue
            if not 0.0 <= fv <= 1.0:
                err(f"{name} must be in [0, 1], got {v!r}")

        # -------------------- arrivals --------------------
        dbg("Checking arrival profile...")
        try:
            profile = list(self.arrival_profile or [])
        except TypeError:
            err(f"arrival_profile must be a sequence of rates, got {self.arrival_profile!r}")
            profile = None
        if profile == []:
            err("arrival_profile must contain at least one rate")
        elif profile:
            try:
                rates = [float(r) for r in profile]
                if any(r < 0 or math.isnan(r) for r in rates):
                    err(f"arrival_profile rates must be >= 0, got {profile!r}")
                elif max(rates) == 0:
                    warn("arrival_profile is all zero; sampling arrivals will fail")
            except (TypeError, ValueError):
                err(f"arrival_profile must be numeric, got {profile!r}")
        try:
            if not float(self.arrival_bucket_minutes) > 0:
                err(f"arrival_bucket_minutes must be > 0, got {self.arrival_bucket_minutes!r}")
        except (TypeError, ValueError):
            err(f"arrival_bucket_minutes must be numeric, got {self.arrival_bucket_minutes!r}")

        for w in warnings:
            self.trace("Config warning", warning=w)

        if errors:
            raise ConfigurationError(
                "Config validation failed:\n - " + "\n - ".join(errors)
            )

        if debug:
            print("[validate] Completed successfully.")

    ###########################################
    # ----------------------------- Getters ------
    ############################################

    def get_horizon(self) -> float:
        return float(self.horizon_minutes)

    def get_n_reps(self) -> int:
        return int(self.n_reps)

    def get_capacities(self) -> Dict[str, int]:
        return {str(k): int(v) for k, v in self.capacities.items()}

    def get_capacity(self, resource: str) -> int:
        return self.get_capacities()[resource]

    def get_duration_model(self) -> Dict[str, dict]:
        """
        Return duration specs per activity with numeric values and the family
        attached, e.g. {"trauma_treat": {"dist": "lognormal", "mean": 30.0, "sd": 2.0}}.
        """
        out: Dict[str, dict] = {}
        for kind, p in self.duration_params.items():
            spec = {k: float(v) for k, v in p.items()}
            spec["dist"] = DURATION_FAMILIES.get(str(kind), "unknown")
            out[str(kind)] = spec
        return out

    def get_arrival_table(self) -> "ArrivalRateTable":
        return ArrivalRateTable.from_hourly(self.arrival_profile, bucket_minutes=self.arrival_bucket_minutes)

    # seeds
    def get_base_seed(self) -> int:
        return int(getattr(self, "base_seed", 0) or 0)

    def seed_for(self, run_id: int) -> int:
        # master seed of one replication; per-site seeds are derived by RandomStreams
        return self.get_base_seed() + int(run_id)


# ## Distribution helpers

def lognormal_moments(mean: float, std: float) -> Tuple[float, float]:
    """
    Location/scale (mu, sigma) of the underlying normal for a lognormal with
    the given sample mean and standard deviation.
    """
    if mean <= 0 or std <= 0:
        raise ConfigurationError(f"lognormal mean and std must be > 0, got mean={mean!r}, std={std!r}")
    m2, v = mean ** 2, std ** 2
    mu = math.log(m2 / math.sqrt(v + m2))
    sigma = math.sqrt(math.log((v + m2) / m2))
    return mu, sigma


# ## Arrival rate table

@dataclass(frozen=True)
class ArrivalRateTable:
    """
    Piecewise-constant, cyclic arrival rate: `rates[i]` (arrivals per minute)
    applies from `i * bucket_width` until the next bucket. Read-only and
    shared by every replication.
    """
    rates: Tuple[float, ...]
    bucket_width: float = 60.0

    def __post_init__(self) -> None:
        rates = tuple(float(r) for r in self.rates)
        if not rates:
            raise ConfigurationError("arrival rate table is empty")
        if any(r < 0 or math.isnan(r) for r in rates):
            raise ConfigurationError(f"arrival rates must be >= 0, got {rates!r}")
        if not self.bucket_width > 0:
            raise ConfigurationError(f"bucket width must be > 0, got {self.bucket_width!r}")
        object.__setattr__(self, "rates", rates)
        object.__setattr__(self, "bucket_width", float(self.bucket_width))

    @classmethod
    def from_hourly(cls, rates_per_hour: Iterable[float], bucket_minutes: float = 60.0) -> "ArrivalRateTable":
        return cls(tuple(float(r) / 60.0 for r in rates_per_hour), bucket_width=float(bucket_minutes))

    @classmethod
    def from_frame(cls, df: pd.DataFrame, rate_col: str = "arrival_rate",
                   bucket_minutes: float = 60.0) -> "ArrivalRateTable":
        return cls.from_hourly(df[rate_col].astype(float).tolist(), bucket_minutes=bucket_minutes)

    def __len__(self) -> int:
        return len(self.rates)

    @property
    def span(self) -> float:
        return self.bucket_width * len(self.rates)

    @property
    def max_rate(self) -> float:
        return max(self.rates)

    @property
    def starts(self) -> Tuple[float, ...]:
        return tuple(i * self.bucket_width for i in range(len(self.rates)))

    def bucket(self, t: float) -> int:
        return int(t // self.bucket_width) % len(self.rates)

    def rate_at(self, t: float) -> float:
        return self.rates[self.bucket(t)]


def load_arrival_profile(source: Union[str, Path]) -> pd.DataFrame:
    """
    Read a `period,arrival_rate` CSV (local path or URL). Rates are arrivals
    per hour; rows are consecutive periods of equal length.
    """
    df = pd.read_csv(source)
    missing = {"period", "arrival_rate"} - set(df.columns)
    if missing:
        raise ConfigurationError(f"arrival profile {source!s} is missing column(s): {sorted(missing)}")
    return df


# ## Arrival process (thinning)

class ArrivalProcess:
    """
    Inter-arrival times for a non-stationary Poisson process, sampled by
    thinning: candidate gaps come from Exp(lambda_max) and a candidate at
    time t is accepted with probability lambda(t) / lambda_max.
    """
    IAT_SITE = "arrival-thinning-iat"
    U_SITE = "arrival-thinning-u"

    def __init__(self, table: ArrivalRateTable, streams: RandomStreams, trace=lambda *a, **k: None):
        self.table = table
        self.streams = streams
        self.trace = trace
        self.n_candidates = 0
        self.n_arrivals = 0
        self._iat_dist: Optional[Exponential] = None
        self._u_dist: Optional[Uniform] = None

    def _samplers(self) -> Tuple[Exponential, Uniform]:
        # DegenerateRateError surfaces on the first sample
        if self._iat_dist is None:
            lambda_max = self.table.max_rate
            if lambda_max <= 0:
                raise DegenerateRateError("maximum arrival rate is 0; no candidate can ever be accepted")
            self._iat_dist = Exponential(mean=1.0 / lambda_max, random_seed=self.streams.seed_for(self.IAT_SITE))
            self._u_dist = Uniform(0.0, 1.0, random_seed=self.streams.seed_for(self.U_SITE))
        return self._iat_dist, self._u_dist

    def next_inter_arrival_time(self, current_time: float) -> float:
        iat_dist, u_dist = self._samplers()
        lambda_max = self.table.max_rate

        total = 0.0
        while True:
            total += float(iat_dist.sample())
            self.n_candidates += 1
            lambda_t = self.table.rate_at(current_time + total)
            if float(u_dist.sample()) < lambda_t / lambda_max:
                return total

    def start(self, scheduler: EventScheduler, on_arrival: Callable[[], Any]) -> None:
        """Keep one pending arrival on the scheduler; each arrival books the next."""

        def arrive() -> None:
            self.n_arrivals += 1
            on_arrival()
            book_next()

        def book_next() -> None:
            iat = self.next_inter_arrival_time(scheduler.now)
            scheduler.schedule(scheduler.now + iat, arrive)

        book_next()
        self.trace("ArrivalProcess ready",
                   lambda_max_per_min=self.table.max_rate,
                   buckets=len(self.table),
                   span_min=self.table.span)


# In[6]:


class DurationSampler:
    """
    Holds per-activity duration samplers using Config.duration_params.
    Each activity samples from its own stream ("duration-<activity>") using
    sim-tools distributions.
    """
    def __init__(self, cfg, streams: RandomStreams, trace=lambda *a, **k: None):
        self.cfg = cfg
        self.streams = streams
        self.trace = trace
        self._samplers: Dict[str, Callable[[], float]] = self._build()

    def sample(self, kind: str) -> float:
        try:
            return float(self._samplers[kind]())
        except KeyError:
            raise KeyError(f"DurationSampler: unknown kind '{kind}'. "
                           f"Known kinds: {sorted(self._samplers.keys())}") from None

    def as_dict(self) -> Dict[str, Callable[[], float]]:
        return self._samplers

    def _build(self) -> Dict[str, Callable[[], float]]:
        dur_model = self.cfg.get_duration_model()
        samplers: Dict[str, Callable[[], float]] = {}
        for kind in sorted(dur_model.keys()):
            p = dur_model[kind]
            seed = self.streams.seed_for(f"duration-{kind}")
            family = p["dist"]
            if family == "exponential":
                dist = Exponential(mean=p["mean"], random_seed=seed)
            elif family == "lognormal":
                dist = Lognormal(p["mean"], p["sd"], random_seed=seed)
            elif family == "normal":
                dist = Normal(mean=p["mean"], sigma=math.sqrt(p["var"]),
                              minimum=p.get("min", 0.0), random_seed=seed)
            else:
                raise ConfigurationError(f"no distribution family for activity {kind!r}")
            # late-binding safe via default arg
            samplers[kind] = (lambda d=dist: float(d.sample()))
            self.trace("Duration sampler built", kind=kind, family=family, params=p)
        return samplers


# ## Patient pathways

class PatientState(str, Enum):
    ARRIVED = "ARRIVED"
    TRIAGE_QUEUE = "TRIAGE_QUEUE"
    TRIAGE_SERVICE = "TRIAGE_SERVICE"
    REGISTRATION_QUEUE = "REGISTRATION_QUEUE"
    REGISTRATION_SERVICE = "REGISTRATION_SERVICE"
    EXAM_QUEUE = "EXAM_QUEUE"
    EXAM_SERVICE = "EXAM_SERVICE"
    TRAUMA_ROOM_QUEUE = "TRAUMA_ROOM_QUEUE"
    TRAUMA_ROOM_SERVICE = "TRAUMA_ROOM_SERVICE"
    TREAT_CUBICLE_QUEUE = "TREAT_CUBICLE_QUEUE"
    TREAT_CUBICLE_SERVICE = "TREAT_CUBICLE_SERVICE"
    DEPARTED = "DEPARTED"


def _activity(kind: str, resource: str, queue_state: PatientState, service_state: PatientState,
              durations: DurationSampler, clock: Callable[[], float]) -> List:
    """queue -> seize -> sampled delay -> release, stamping milestones as attributes."""
    return [
        SetAttribute("state", queue_state),
        SetAttribute(f"{kind}_queue", lambda e: clock()),
        Seize(resource),
        SetAttribute("state", service_state),
        SetAttribute(f"wait_{kind}", lambda e: e.attributes.elapsed(f"{kind}_queue", clock())),
        SetAttribute(f"{kind}_duration", lambda e: durations.sample(kind)),
        Delay(lambda e: e.attributes[f"{kind}_duration"]),
        Release(resource),
    ]


def build_pathways(cfg, streams: RandomStreams, clock: Callable[[], float],
                   trace=lambda *a, **k: None) -> Dict[str, Pathway]:
    """
    Build the patient pathway and its sub-pathways for one replication.
    The entry point is "patient".
    """
    durations = DurationSampler(cfg, streams, trace=trace)
    p_trauma = Bernoulli(float(cfg.prob_trauma), random_seed=streams.seed_for("branch-trauma"))
    p_treat = Bernoulli(float(cfg.non_trauma_treat_p), random_seed=streams.seed_for("branch-nt-treat"))
    S = PatientState

    nontrauma_treatment = Pathway("nontrauma_treatment", [
        *_activity("nontrauma_treat", NT_CUBICLE, S.TREAT_CUBICLE_QUEUE, S.TREAT_CUBICLE_SERVICE,
                   durations, clock),
    ])

    trauma = Pathway("trauma", [
        SetAttribute("patient_type", "trauma"),
        *_activity("trauma", TRAUMA, S.TRAUMA_ROOM_QUEUE, S.TRAUMA_ROOM_SERVICE, durations, clock),
        *_activity("trauma_treat", TRAUMA_CUBICLE, S.TREAT_CUBICLE_QUEUE, S.TREAT_CUBICLE_SERVICE,
                   durations, clock),
    ])

    non_trauma = Pathway("non_trauma", [
        SetAttribute("patient_type", "non_trauma"),
        *_activity("registration", REGISTRATION, S.REGISTRATION_QUEUE, S.REGISTRATION_SERVICE,
                   durations, clock),
        *_activity("examination", EXAMINATION, S.EXAM_QUEUE, S.EXAM_SERVICE, durations, clock),
        SetAttribute("needs_treatment", lambda e: int(p_treat.sample())),
        Branch(lambda e: e.attributes["needs_treatment"], {1: nontrauma_treatment}),
    ])

    patient = Pathway("patient", [
        SetAttribute("start_time", lambda e: clock()),
        SetAttribute("state", S.ARRIVED),
        Log(lambda e: f"{e.name} arrives"),
        *_activity("triage", TRIAGE, S.TRIAGE_QUEUE, S.TRIAGE_SERVICE, durations, clock),
        Branch(lambda e: int(p_trauma.sample()), {1: trauma, 0: non_trauma}),
        SetAttribute("state", S.DEPARTED),
        Log(lambda e: f"{e.name} departs"),
    ])

    return {p.name: p for p in (patient, trauma, non_trauma, nontrauma_treatment)}


# ## Run model function

class Simulation:
    """
    A single replication given a Config - no global state shared between
    replications except the read-only arrival rate table.
    """

    def __init__(self, cfg):
        self.cfg = cfg
        self.trace = cfg.trace  # injected tracer: callable(msg: str, **kwargs)
        self._validated = False #so can run validation() on first rep only
        self._table: Optional[ArrivalRateTable] = None

    def replicate(self, run_id: int = 0) -> MonitoringRecord:
        """Run one replication and return its closed monitoring record."""
        cfg = self.cfg
        tr = self.trace

        # --- Setup & config normalization ---
        tr("Begin replication", run_id=run_id)
        if not self._validated:
            cfg.validate()
            self._table = cfg.get_arrival_table()
            self._validated = True #after first run

        horizon = cfg.get_horizon()
        seed = cfg.seed_for(run_id)
        tr("Master seed", value=seed, horizon=horizon)

        # --- State ---
        streams = RandomStreams(seed, trace=tr)
        scheduler = EventScheduler(trace=tr)
        record = MonitoringRecord(replication=int(run_id), seed=seed, horizon=horizon)
        pools = {
            name: ResourcePool(name, cap, scheduler, record, trace=tr)
            for name, cap in sorted(cfg.get_capacities().items())
        }
        engine = PathwayEngine(scheduler, pools, record, trace=tr)

        pathways = build_pathways(cfg, streams, clock=lambda: scheduler.now, trace=tr)
        patient = pathways["patient"]
        engine.validate(patient)  # before any simulated time elapses

        # --- Arrivals & run ---
        arrivals = ArrivalProcess(self._table, streams, trace=tr)
        arrivals.start(scheduler, lambda: engine.start(patient, name_prefix="patient"))
        scheduler.run(until=horizon)

        engine.close()
        record.close(horizon, pools.values())
        tr("Replication complete",
           run_id=run_id,
           arrivals=len(record.arrivals),
           completed=len(record.completed),
           events=scheduler.n_dispatched,
           thinning_candidates=arrivals.n_candidates)
        return record

    def single_run(self, run_id: int = 0) -> Dict[str, Any]:
        """
        One replication.

        Outputs:
          - "record": the MonitoringRecord.
          - "patients": patient-level records (completed and in-flight).
          - "kpis": replication-level KPIs (see replication_kpis).
        """
        record = self.replicate(run_id)
        return {
            "run_id": run_id,
            "seed_used": record.seed,
            "kpis": replication_kpis(record),
            "patients": patient_records(record),
            "record": record,
        }


# ## KPIs

# (code, label, resource) - codes order the KPI columns in reports
KPI_RESOURCES: Tuple[Tuple[str, str, str], ...] = (
    ("01", "triage", TRIAGE),
    ("02", "registration", REGISTRATION),
    ("03", "examination", EXAMINATION),
    ("04", "nontrauma_treat", NT_CUBICLE),
    ("06", "trauma", TRAUMA),
    ("07", "trauma_treat", TRAUMA_CUBICLE),
)
KPI_PATIENT_TYPES: Tuple[Tuple[str, str], ...] = (("05", "non_trauma"), ("08", "trauma"))


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else float("nan")


def replication_kpis(record: MonitoringRecord) -> Dict[str, float]:
    """
    KPIs for one replication: arrivals, mean wait and utilisation per
    resource, mean total time by patient type (completed patients only) and
    throughput.
    """
    waits: Dict[str, List[float]] = defaultdict(list)
    for ev in record.resource_events:
        waits[ev.resource].append(ev.wait)

    kpis: Dict[str, float] = {"00_arrivals": len(record.arrivals)}
    for code, label, resource in KPI_RESOURCES:
        kpis[f"{code}a_{label}_wait"] = _mean(waits.get(resource, []))
        kpis[f"{code}b_{label}_util"] = (
            record.utilisation(resource) if resource in record.capacities else float("nan")
        )

    completed = record.completed
    for code, ptype in KPI_PATIENT_TYPES:
        times = [a.attributes[PathwayEngine.TOTAL_KEY] for a in completed
                 if a.attributes.get("patient_type") == ptype]
        kpis[f"{code}_total_time_{ptype}"] = _mean(times)
    kpis["09_throughput"] = len(completed)
    return kpis


def kpi_frame(records: Sequence[MonitoringRecord]) -> pd.DataFrame:
    """One row of KPIs per replication, indexed by replication id."""
    df = pd.DataFrame([replication_kpis(r) for r in records],
                      index=pd.Index([r.replication for r in records], name="rep"))
    return df.sort_index(axis=1)


def aggregate_kpis(records: Sequence[MonitoringRecord]) -> pd.Series:
    """Mean across replications of each per-replication KPI."""
    return kpi_frame(records).mean(numeric_only=True)


def patient_records(record: MonitoringRecord) -> List[Dict[str, Any]]:
    rows = []
    for a in record.arrivals:
        attrs = {k: (v.value if isinstance(v, Enum) else v) for k, v in a.attributes.items()}
        rows.append({
            "id": a.entity_id,
            "name": a.name,
            "arrival": a.created_time,
            "completed": a.completed,
            "departure": a.end_time,
            **attrs,
        })
    return rows


# # Get a clean copy of config ready for scenarios

# In[9]:


def clone_cfg(cfg):
    """safe copy for scenario overrides (nested dicts included)."""
    return copy.deepcopy(cfg)

def deep_update(dst: dict, src: dict) -> dict:
    """Recursive dict merge: dst <- src (modifies dst, returns dst)."""
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst

def apply_overrides(cfg, overrides: Dict[str, Any]):
    """
    Apply scenario overrides onto a cloned Config.
    Supports both top-level attributes and nested dict merges.
    """
    cfg2 = clone_cfg(cfg)
    for k, v in (overrides or {}).items():
        if not hasattr(cfg2, k):
            raise ConfigurationError(f"unknown config field in overrides: {k!r}")
        cur = getattr(cfg2, k, None)
        if isinstance(cur, dict) and isinstance(v, dict):
            deep_update(cur, v)  # in-place
        else:
            setattr(cfg2, k, v)
    return cfg2


# # Single run of base config

# In[10]:


def run_single(cfg, run_id: int = 0) -> dict:
    sim = Simulation(cfg)
    return sim.single_run(run_id=run_id)


# # Multiple reps of base config

# In[11]:


def run_replications(cfg, n: Optional[int] = None) -> List[MonitoringRecord]:
    """
    Run `n` independent replications (default cfg.n_reps). Replication i uses
    master seed base_seed + i. Any replication error aborts the batch.
    """
    n_reps = cfg.get_n_reps() if n is None else int(n)
    if n_reps < 1:
        raise ConfigurationError(f"number of replications must be >= 1, got {n!r}")
    sim = Simulation(cfg)
    return [sim.replicate(run_id=r) for r in range(n_reps)]


def run_reps(cfg, n_reps: Optional[int] = None) -> Tuple[list, dict]:
    """
    Returns:
      rows: list of KPI dicts (one per rep; each has 'rep').
      results_dict: {rep -> list[patient-record-dicts]}
    """
    rows: List[dict] = []
    results_dict: Dict[int, list] = {}
    for record in run_replications(cfg, n_reps):
        rows.append({"rep": record.replication, **replication_kpis(record)})
        results_dict[record.replication] = patient_records(record)
    return rows, results_dict


# In[12]:


def summarize_reps(rows):
    df = pd.json_normalize(rows)
    desc = df.select_dtypes(include="number").describe()
    kpis = df.drop(columns=["rep", "scenario"], errors="ignore")
    means = kpis.mean(numeric_only=True)
    stds  = kpis.std(numeric_only=True, ddof=1)
    ci95  = 1.96 * stds / (len(df) ** 0.5)
    summary = pd.DataFrame({"mean": means, "std": stds, "ci95": ci95})
    return df, desc, summary


# # Build scenarios

# In[13]:


def run_scenarios(
    base_cfg,
    scenarios: Dict[str, Dict[str, Any]],
    n_reps: Optional[int] = None,
    *,
    attach_patients_last_only: bool = True,
):
    """
    Runs each scenario for n_reps.
    Returns:
      kpi_rows: list of dicts (columns: scenario, rep, KPIs...)
      patients_by_scenario: {scenario -> {rep -> list[patient dicts]}}
         If attach_patients_last_only=True, stores only the last replication's patients per scenario.
    """
    kpi_rows: List[dict] = []
    patients_by_scenario: Dict[str, Dict[int, list]] = {}

    for scen_name, overrides in scenarios.items():
        cfg_s = apply_overrides(base_cfg, overrides)
        cfg_s.trace("Scenario config applied", scenario=scen_name)
        records = run_replications(cfg_s, n_reps)
        patients_by_scenario[scen_name] = {}

        for i, record in enumerate(records):
            kpi_rows.append({"scenario": scen_name, "rep": record.replication, **replication_kpis(record)})

            # store patients either every rep or only last rep
            if not attach_patients_last_only or i == len(records) - 1:
                patients_by_scenario[scen_name][record.replication] = patient_records(record)

    return kpi_rows, patients_by_scenario


# In[14]:


def scenarios_to_df(kpi_rows):
    return pd.json_normalize(kpi_rows)
