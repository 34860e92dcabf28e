# # Example run
# running outputs of the treatment centre model and save plots to html

# In[15]:
from __future__ import annotations
from typing import Dict, Any
from pathlib import Path
from plotly.io import to_html
import webbrowser

import numpy as np
import pandas as pd
import plotly.express as px

# from model.py
from model import (
    Config,
    Simulation,
    KPI_RESOURCES,
    run_single,
    run_reps,
    summarize_reps,
    run_scenarios,
    scenarios_to_df,
    apply_overrides,
)

class Report:
    """
    Collect Plotly figures and make a single self-contained HTML.
    Optionally also save each figure as its own HTML/PNG.
    """
    def __init__(self, out_dir: Path, *, open_in_browser: bool = False):
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self._figs: list[tuple[object, str]] = []
        self._open = bool(open_in_browser)

    def __len__(self) -> int:
        return len(self._figs)

    def add(self, fig, title: str, *, save_individual: bool = True, png: bool = False):
        """Register a figure and (optionally) save standalone assets."""
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in title.lower())
        if save_individual:
            html_path = self.out_dir / f"{safe}.html"
            fig.write_html(str(html_path), include_plotlyjs="cdn", auto_open=False)
            print(f"[fig] {html_path}")
            if png:
                try:
                    fig.write_image(str(self.out_dir / f"{safe}.png"), scale=2)  # needs kaleido
                except (ValueError, ImportError, RuntimeError) as e:
                    print(f"[warn] PNG export failed for {title!r}: {e}")
        self._figs.append((fig, title))

    def save(self, filename: str = "report.html", *, heading: str = "Simulation report") -> Path:
        """Write one combined HTML file with all figures."""
        body = []
        for fig, title in self._figs:
            body.append(f"<h2>{title}</h2>")
            body.append(to_html(fig, include_plotlyjs=False, full_html=False))
        doc = f"""<!doctype html>
<html><head><meta charset="utf-8" />
<title>{heading}</title>
<meta name="viewport" content="width=device-width, initial-scale=1" />
<script src="https://cdn.plot.ly/plotly-2.30.0.min.js"></script>
<style>
 body{{font-family:system-ui,-apple-system,Segoe UI,Roboto,Ubuntu,Inter,sans-serif; margin:24px}}
 h1{{margin:0 0 12px}}
 h2{{margin:28px 0 8px; font-size:18px}}
</style>
</head><body>
<h1>{heading}</h1>
{''.join(body)}
</body></html>"""
        out = self.out_dir / filename
        out.write_text(doc, encoding="utf-8")
        print(f"[report] {out}")
        if self._open:
            try:
                webbrowser.open_new_tab(out.resolve().as_uri())
            except webbrowser.Error as e:
                print(f"[warn] could not open browser: {e}")
        return out


# # Plots

# ## Helpers - reshape and CIs

def patients_to_df(patients_by_scen: Dict[str, Dict[int, list]]) -> pd.DataFrame:
    frames = []
    for scen, rep_map in patients_by_scen.items():
        for rep, plist in rep_map.items():
            if not plist:
                continue
            d = pd.DataFrame(plist)
            d["scenario"] = scen
            d["rep"] = int(rep)
            frames.append(d)
    return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()


def _is_scalar_series(s: pd.Series) -> bool:
    return (
        pd.api.types.is_numeric_dtype(s.dtype) or pd.api.types.is_bool_dtype(s.dtype)
    ) and not s.apply(lambda x: isinstance(x, (dict, list, tuple, np.ndarray))).any()


def melt_kpis(
    df_scen: pd.DataFrame,
    kpis: list[str] | None = None,
    *,
    id_cols: tuple[str, ...] = ("scenario", "rep"),
    prefixes: tuple[str, ...] | None = None,
    scenario_order: list[str] | None = None,
    value_name: str = "value",
    dropna: bool = True,
) -> pd.DataFrame:
    """Wide KPI rows -> long (id_cols..., kpi, value)."""
    df = df_scen.copy()
    present_ids = [c for c in id_cols if c in df.columns]
    if kpis is None:
        candidate_cols = [c for c in df.columns if c not in present_ids]
        kpis = [c for c in candidate_cols if _is_scalar_series(df[c])]
    if prefixes:
        kpis = sorted(c for c in kpis if c.startswith(prefixes))
    missing = [c for c in kpis if c not in df.columns]
    if missing:
        raise KeyError(f"Requested KPI(s) not in DataFrame: {missing}")
    long = df.melt(id_vars=present_ids, value_vars=kpis, var_name="kpi", value_name=value_name)
    if dropna:
        long = long[long[value_name].notna()].copy()
    if "scenario" in long.columns:
        if scenario_order is None:
            scenario_order = pd.unique(long["scenario"])
        long["scenario"] = pd.Categorical(long["scenario"], categories=list(scenario_order), ordered=True)
    return long


def ci95(
    df_long: pd.DataFrame,
    *,
    val: str = "value",
    group_cols: tuple[str, ...] = ("scenario", "kpi"),
    z: float = 1.96,
    observed: bool = True,
) -> pd.DataFrame:
    agg = (df_long.groupby(list(group_cols), as_index=False, observed=observed)
                  .agg(mean=(val, "mean"), n=(val, "size"), sd=(val, "std")))
    agg["se"] = agg["sd"] / np.sqrt(agg["n"].clip(lower=1))
    agg["lo"] = agg["mean"] - z * agg["se"]
    agg["hi"] = agg["mean"] + z * agg["se"]
    return agg


def resource_kpis_long(df_scen: pd.DataFrame) -> pd.DataFrame:
    """Per-resource wait/util columns split into (resource, measure)."""
    cols = [f"{code}{sfx}_{label}_{measure}"
            for code, label, _res in KPI_RESOURCES
            for sfx, measure in (("a", "wait"), ("b", "util"))]
    long = melt_kpis(df_scen, [c for c in cols if c in df_scen.columns])
    parts = long["kpi"].str.split("_", n=1).str[1]
    long["resource"] = parts.str.rsplit("_", n=1).str[0]
    long["measure"] = parts.str.rsplit("_", n=1).str[1]
    return long


def _bucket_averages(times: np.ndarray, values: np.ndarray, edges: np.ndarray) -> np.ndarray:
    """
    Time-average of a step function over each [edges[i], edges[i+1]).
    The function is 0 before times[0] and holds values[i] from times[i]
    until the next change; at repeated times the last value wins.
    """
    t = np.concatenate([[0.0], times])
    v = np.concatenate([[0.0], values])
    area = np.concatenate([[0.0], np.cumsum(v[:-1] * np.diff(t))])
    idx = np.searchsorted(t, edges, side="right") - 1
    at_edges = area[idx] + v[idx] * (edges - t[idx])
    return np.diff(at_edges) / np.diff(edges)


def queue_timeseries(records, bucket: float = 60.0) -> pd.DataFrame:
    """
    Time-weighted mean queue length and busy servers per resource per time
    bucket, averaged over the given records.
    """
    frames = []
    for r in records:
        states = r.to_frames()["resource_states"]
        edges = np.append(np.arange(0.0, r.horizon, bucket), r.horizon)
        if len(edges) < 2:
            continue
        for resource in sorted(r.capacities or set(states["resource"])):
            s = states[states["resource"].eq(resource)]
            t = s["time"].to_numpy(dtype=float)
            frames.append(pd.DataFrame({
                "resource": resource,
                "bucket": edges[:-1],
                "queue": _bucket_averages(t, s["queue"].to_numpy(dtype=float), edges),
                "server": _bucket_averages(t, s["server"].to_numpy(dtype=float), edges),
                "replication": r.replication,
            }))
    if not frames:
        return pd.DataFrame(columns=["resource", "bucket", "queue", "server"])
    ts = pd.concat(frames, ignore_index=True)
    return (ts.groupby(["resource", "bucket"], as_index=False)
              .agg(queue=("queue", "mean"), server=("server", "mean")))


# ## Figures

def fig_kpi_ci(summ: pd.DataFrame, title: str):
    fig = px.bar(
        summ, x="scenario", y="mean", color="scenario",
        facet_col="kpi", facet_col_wrap=2,
        error_y=summ["hi"] - summ["mean"], error_y_minus=summ["mean"] - summ["lo"],
        title=title,
    )
    fig.for_each_annotation(lambda a: a.update(text=a.text.split("=")[-1]))
    fig.update_yaxes(matches=None, rangemode="tozero")
    return fig


def fig_resource(long_res: pd.DataFrame, measure: str, title: str):
    fig = px.box(
        long_res[long_res["measure"].eq(measure)],
        x="resource", y="value", color="scenario", points="all",
        title=title,
    )
    if measure == "util":
        fig.update_yaxes(tickformat=".0%", range=[0, 1])
    else:
        fig.update_yaxes(rangemode="tozero")
    return fig


def fig_total_time(patients_df: pd.DataFrame):
    done = patients_df[patients_df["completed"].astype(bool)].copy()
    fig = px.violin(
        done, x="scenario", y="total_time", color="patient_type",
        box=True, points=False,
        labels={"total_time": "Time in centre (min)", "patient_type": "Patient type"},
        title="Total time in centre (completed patients)",
    )
    fig.update_yaxes(rangemode="tozero")
    return fig


def fig_queue_ts(ts: pd.DataFrame):
    fig = px.line(
        ts, x="bucket", y="queue", color="resource", markers=True,
        labels={"bucket": "Minutes since opening", "queue": "Mean queue length (time-weighted)"},
        title="Queue length over the day",
    )
    fig.update_yaxes(rangemode="tozero")
    return fig


###################################################

def main(n_reps: int = 20, out_dir: str = "outputs", open_in_browser: bool = True):

    # --- Base config ---
    cfg = Config()
    cfg.TRACE = False

    # save images to html for sharing
    report = Report(Path(out_dir), open_in_browser=open_in_browser)

    # --- Single run ---
    res = run_single(cfg, run_id=0)
    print("KPIs:", list(res["kpis"].keys()))

    # --- Reps ---
    rows, _results = run_reps(cfg, n_reps=n_reps)
    df, desc, summary = summarize_reps(rows)
    print("Replication summary:"); print(desc)
    print("\nKPI means ±95% CI:"); print(summary)

    # --- Scenarios ---
    scenarios: Dict[str, Dict[str, Any]] = {
        "baseline": {},
        "extra_triage_bay": {"capacities": {"triage_bay": 2}},
        "extra_exam_room": {"capacities": {"examination_room": 4}},
        "extra_nt_cubicle": {"capacities": {"nontrauma_cubicle": 2}},
        "more_trauma": {"prob_trauma": 0.2},
    }

    kpi_rows, patients_by_scen = run_scenarios(cfg, scenarios, n_reps=n_reps, attach_patients_last_only=False)
    df_scen = scenarios_to_df(kpi_rows)
    print("\nScenario KPI head:")
    print(df_scen.head())

    # confirm each scenario actually changed what you think
    for name, ov in scenarios.items():
        c = apply_overrides(cfg, ov)
        print(f"\n{name}")
        print(" capacities:", c.get_capacities(), "prob_trauma:", c.prob_trauma)

    patients_df = patients_to_df(patients_by_scen).drop_duplicates(subset=["scenario", "rep", "id"])

    #### kpi bars plus CIs
    summ = ci95(melt_kpis(df_scen, prefixes=("05_", "08_", "09_", "00_")))
    report.add(fig_kpi_ci(summ, "Arrivals, throughput and total time (mean ±95% CI)"),
               "Headline KPIs by scenario")

    #### waits and utilisation by resource
    long_res = resource_kpis_long(df_scen)
    report.add(fig_resource(long_res, "wait", "Mean wait by resource (per replication)"),
               "Waits by resource")
    report.add(fig_resource(long_res, "util", "Utilisation by resource (per replication)"),
               "Utilisation by resource")

    #### patient level
    report.add(fig_total_time(patients_df), "Total time in centre")

    #### queue length over the day, per scenario
    for name, ov in scenarios.items():
        sim = Simulation(apply_overrides(cfg, ov))
        records = [sim.replicate(run_id=r) for r in range(min(n_reps, 5))]
        fig = fig_queue_ts(queue_timeseries(records))
        fig.update_layout(title=f"Queue length over the day: {name}")
        report.add(fig, f"Queue length over the day {name}")

    return report.save("report.html", heading="Scenario analysis: treatment centre KPIs")

if __name__ == "__main__":
    main()
