"""Tests for the treatment centre model: config, replications and KPIs."""

from __future__ import annotations

import math

import numpy as np
import pytest

from des import ConfigurationError, DegenerateRateError
from model import (
    Config,
    PatientState,
    Simulation,
    TRAUMA,
    NT_CUBICLE,
    EXAMINATION,
    lognormal_moments,
    replication_kpis,
    kpi_frame,
    aggregate_kpis,
    run_replications,
    run_single,
    run_reps,
    summarize_reps,
    run_scenarios,
    scenarios_to_df,
    apply_overrides,
    clone_cfg,
)


class TestLognormalMoments:

    def test_round_trip_mean_and_sd(self) -> None:
        mu, sigma = lognormal_moments(30.0, 2.0)
        x = np.random.default_rng(7).lognormal(mu, sigma, size=200_000)
        assert x.mean() == pytest.approx(30.0, rel=0.01)
        assert x.std() == pytest.approx(2.0, rel=0.02)

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ConfigurationError):
            lognormal_moments(0.0, 1.0)


class TestConfig:

    def test_defaults_validate(self) -> None:
        Config().validate()

    def test_validation_collects_every_error(self) -> None:
        cfg = Config()
        cfg.capacities["triage_bay"] = 0
        cfg.prob_trauma = 1.5
        cfg.duration_params["registration"]["sd"] = -1.0
        with pytest.raises(ConfigurationError) as exc:
            cfg.validate()
        msg = str(exc.value)
        assert "triage_bay" in msg
        assert "prob_trauma" in msg
        assert "registration" in msg

    @pytest.mark.parametrize("field, value", [
        ("arrival_bucket_minutes", None),
        ("arrival_bucket_minutes", "x"),
        ("arrival_profile", 5),
        ("capacities", 3),
        ("duration_params", "fast"),
    ])
    def test_wrong_types_raise_configuration_error(self, field, value) -> None:
        cfg = Config(**{field: value})
        with pytest.raises(ConfigurationError, match=field):
            cfg.validate()

    @pytest.mark.parametrize("minimum", [None, "x"])
    def test_non_numeric_exam_minimum(self, minimum) -> None:
        cfg = Config()
        cfg.duration_params["examination"]["min"] = minimum
        with pytest.raises(ConfigurationError, match="min"):
            cfg.validate()

    def test_missing_capacity(self) -> None:
        cfg = Config()
        del cfg.capacities["trauma_room"]
        with pytest.raises(ConfigurationError, match="trauma_room"):
            cfg.validate()

    def test_seed_for_offsets_base_seed(self) -> None:
        cfg = Config(base_seed=100)
        assert [cfg.seed_for(i) for i in range(3)] == [100, 101, 102]

    def test_invalid_config_fails_before_running(self) -> None:
        cfg = Config(horizon_minutes=-5)
        with pytest.raises(ConfigurationError):
            Simulation(cfg).replicate(0)

    def test_zero_arrival_profile_is_degenerate(self) -> None:
        cfg = Config(arrival_profile=[0.0, 0.0])
        with pytest.raises(DegenerateRateError):
            Simulation(cfg).replicate(0)


class TestReplication:

    def test_same_seed_is_deterministic(self, short_cfg) -> None:
        a = Simulation(short_cfg).replicate(0)
        b = Simulation(short_cfg).replicate(0)
        assert a.to_dict() == b.to_dict()

    def test_different_run_ids_differ(self, short_cfg) -> None:
        sim = Simulation(short_cfg)
        a, b = sim.replicate(0), sim.replicate(1)
        assert [s.created_time for s in a.arrivals] != [s.created_time for s in b.arrivals]

    def test_record_invariants(self, short_cfg) -> None:
        record = Simulation(short_cfg).replicate(0)
        assert record.closed
        assert record.arrivals
        assert [a.entity_id for a in record.arrivals] == sorted(a.entity_id for a in record.arrivals)
        for ev in record.resource_events:
            assert ev.enqueue_time <= ev.start_time <= ev.end_time <= short_cfg.horizon_minutes
        for name in record.capacities:
            assert 0.0 <= record.utilisation(name) <= 1.0
        for state in record.resource_states:
            assert state.server <= state.capacity

    def test_completed_patients_have_departed(self, short_cfg) -> None:
        record = Simulation(short_cfg).replicate(0)
        for a in record.completed:
            assert a.attributes["state"] == PatientState.DEPARTED
            assert a.attributes["patient_type"] in ("trauma", "non_trauma")
            assert a.attributes["total_time"] == pytest.approx(a.end_time - a.attributes["start_time"])
        for a in record.arrivals:
            if not a.completed:
                assert "total_time" not in a.attributes

    def test_changing_one_activity_does_not_change_triage_draws(self, short_cfg) -> None:
        slow_exam = apply_overrides(short_cfg, {"duration_params": {"examination": {"mean": 40.0}}})
        a = Simulation(short_cfg).replicate(0)
        b = Simulation(slow_exam).replicate(0)

        def triage(record):
            return {s.entity_id: (s.created_time, s.attributes.get("triage_duration"),
                                  s.attributes.get("patient_type"))
                    for s in record.arrivals}

        assert triage(a) == triage(b)
        exam_a = [ev.activity_time for ev in a.resource_events if ev.resource == EXAMINATION]
        exam_b = [ev.activity_time for ev in b.resource_events if ev.resource == EXAMINATION]
        assert exam_a != exam_b

    def test_all_trauma(self, short_cfg) -> None:
        cfg = apply_overrides(short_cfg, {"prob_trauma": 1.0})
        record = Simulation(cfg).replicate(0)
        assert all(a.attributes["patient_type"] == "trauma" for a in record.completed)
        kpis = replication_kpis(record)
        assert math.isnan(kpis["05_total_time_non_trauma"])

    def test_no_non_trauma_treatment(self, short_cfg) -> None:
        cfg = apply_overrides(short_cfg, {"prob_trauma": 0.0, "non_trauma_treat_p": 0.0})
        record = Simulation(cfg).replicate(0)
        resources = {ev.resource for ev in record.resource_events}
        assert TRAUMA not in resources
        assert NT_CUBICLE not in resources
        assert math.isnan(replication_kpis(record)["04a_nontrauma_treat_wait"])

    def test_single_run_outputs(self, short_cfg) -> None:
        res = run_single(short_cfg, run_id=2)
        assert res["seed_used"] == short_cfg.base_seed + 2
        assert res["record"].replication == 2
        assert len(res["patients"]) == res["kpis"]["00_arrivals"]
        assert all(isinstance(p["state"], str) for p in res["patients"])


class TestKpis:

    def test_replication_seeds(self, short_cfg) -> None:
        records = run_replications(short_cfg)
        assert [r.seed for r in records] == [short_cfg.base_seed + i for i in range(3)]
        assert [r.replication for r in records] == [0, 1, 2]

    def test_failing_replication_aborts_the_batch(self, short_cfg, monkeypatch) -> None:
        calls = []
        replicate = Simulation.replicate

        def failing_second(self, run_id=0):
            calls.append(run_id)
            if run_id == 1:
                raise RuntimeError("replication 1 failed")
            return replicate(self, run_id)

        monkeypatch.setattr(Simulation, "replicate", failing_second)
        result = None
        with pytest.raises(RuntimeError, match="replication 1 failed"):
            result = run_replications(short_cfg, 3)
        assert result is None
        assert calls == [0, 1]

    def test_rejects_zero_replications(self, short_cfg) -> None:
        with pytest.raises(ConfigurationError):
            run_replications(short_cfg, 0)

    def test_kpis_are_per_replication(self, short_cfg) -> None:
        record = Simulation(short_cfg).replicate(0)
        kpis = replication_kpis(record)
        assert kpis["00_arrivals"] == len(record.arrivals)
        assert kpis["09_throughput"] == len(record.completed)
        assert kpis["09_throughput"] <= kpis["00_arrivals"]
        assert kpis["01a_triage_wait"] >= 0.0
        assert 0.0 <= kpis["01b_triage_util"] <= 1.0

    def test_aggregate_is_mean_of_replications(self, short_cfg) -> None:
        records = run_replications(short_cfg, 2)
        frame = kpi_frame(records)
        agg = aggregate_kpis(records)
        assert list(frame.index) == [0, 1]
        assert agg["00_arrivals"] == pytest.approx(frame["00_arrivals"].mean())
        assert agg["09_throughput"] == pytest.approx(
            (len(records[0].completed) + len(records[1].completed)) / 2
        )

    def test_run_reps_and_summary(self, short_cfg) -> None:
        rows, results = run_reps(short_cfg, 2)
        assert [r["rep"] for r in rows] == [0, 1]
        assert set(results) == {0, 1}
        df, desc, summary = summarize_reps(rows)
        assert len(df) == 2
        assert "rep" not in summary.index
        assert {"mean", "std", "ci95"} <= set(summary.columns)
        assert summary.loc["00_arrivals", "mean"] == pytest.approx(df["00_arrivals"].mean())


class TestScenarios:

    def test_clone_cfg_is_a_deep_copy(self) -> None:
        base = Config()
        cfg = clone_cfg(base)
        cfg.capacities["triage_bay"] = 4
        cfg.duration_params["triage"]["mean"] = 9.0
        assert cfg is not base
        assert base.capacities["triage_bay"] == 1
        assert base.duration_params["triage"]["mean"] == 3.0

    def test_overrides_do_not_touch_base(self) -> None:
        base = Config()
        cfg = apply_overrides(base, {"capacities": {"triage_bay": 3}, "prob_trauma": 0.3})
        assert cfg.get_capacity("triage_bay") == 3
        assert cfg.get_capacity("examination_room") == 3
        assert base.get_capacity("triage_bay") == 1
        assert base.prob_trauma == 0.12

    def test_unknown_override_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            apply_overrides(Config(), {"n_doctors": 4})

    def test_run_scenarios(self, short_cfg) -> None:
        scenarios = {"baseline": {}, "two_bays": {"capacities": {"triage_bay": 2}}}
        kpi_rows, patients = run_scenarios(short_cfg, scenarios, n_reps=2)
        df = scenarios_to_df(kpi_rows)
        assert list(df["scenario"].unique()) == ["baseline", "two_bays"]
        assert len(df) == 4
        assert list(patients["baseline"]) == [1]
        util = df.groupby("scenario")["01b_triage_util"].mean()
        assert ((util >= 0.0) & (util <= 1.0)).all()
