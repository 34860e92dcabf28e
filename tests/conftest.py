from __future__ import annotations

import pytest

from des import EventScheduler, MonitoringRecord, ResourcePool, PathwayEngine
from model import Config


def make_engine(capacities):
    """Scheduler, pools, record and engine wired together for kernel tests."""
    scheduler = EventScheduler()
    record = MonitoringRecord()
    pools = {name: ResourcePool(name, cap, scheduler, record) for name, cap in capacities.items()}
    engine = PathwayEngine(scheduler, pools, record)
    return scheduler, pools, record, engine


@pytest.fixture
def short_cfg() -> Config:
    """Default treatment centre with a five hour horizon."""
    cfg = Config()
    cfg.horizon_minutes = 300.0
    cfg.n_reps = 3
    return cfg
