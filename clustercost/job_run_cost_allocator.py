"""
Job Run Cost Allocator

Attributes priced cluster state slices to the job runs that used them.

Key Logic:
1. Split every run into lifecycle pieces, one per slice it touches:
   - init:         slice containing run start
   - terminal:     slice containing run end (unless it is the init slice)
   - intermediate: slices strictly inside (run start, run end)
2. Piece runtime:
       init         min(slice end, run end) - run start
                    (from slice start instead when the slice is CREATING /
                    STARTING or the run got a fresh cluster: the cluster was
                    provisioned for this run)
       terminal     run end - max(slice start, run start)
       intermediate slice end - slice start
3. Shared (job_cluster_type = existing) runs split a slice fairly:
       run_state_utilization = min(runtime / Σ overlapping runtime, 1.0)
   Automated runs own their slices: run_state_utilization = 1.0
4. state_utilization_percent = runtime / slice uptime
5. Every cost component is scaled by
       state_utilization_percent × run_state_utilization
   and summed per (org_id, run_id)

Complexity: HIGH (6/10)
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

from .event_state_reconstructor import CREATING, STARTING
from .utils import PerformanceTimer, get_logger, ms_series_to_timestamp, safe_round

RUN_KEYS = ["org_id", "run_id"]

REQUIRED_RUN_COLUMNS = ["org_id", "run_id", "cluster_id", "start_ms", "end_ms"]
OPTIONAL_RUN_COLUMNS = ["job_id", "id_in_job", "job_cluster_type", "terminal_state", "trigger_type", "task_type"]

REQUIRED_SLICE_COLUMNS = [
    "org_id",
    "cluster_id",
    "start_ms",
    "end_ms",
    "state_type",
    "uptime_seconds",
    "cluster_name",
    "custom_tags",
    "driver_node_type_id",
    "node_type_id",
    "dbu_rate",
    "is_automated",
    "worker_potential_core_h",
    "driver_compute_cost",
    "worker_compute_cost",
    "driver_dbu_cost",
    "worker_dbu_cost",
]

INIT_STATE_TYPES = [CREATING, STARTING]

SCALED_COLUMNS = [
    "worker_potential_core_h",
    "driver_compute_cost",
    "driver_dbu_cost",
    "worker_compute_cost",
    "worker_dbu_cost",
]

COST_COLUMNS = [
    "driver_compute_cost",
    "driver_dbu_cost",
    "worker_compute_cost",
    "worker_dbu_cost",
    "total_driver_cost",
    "total_worker_cost",
    "total_compute_cost",
    "total_dbu_cost",
    "total_cost",
]

UTILIZATION_COLUMNS = ["spark_task_runtime_ms", "spark_task_runtime_h", "job_run_cluster_util"]

FACT_COLUMNS = (
    [
        "org_id",
        "run_id",
        "job_id",
        "id_in_job",
        "cluster_id",
        "cluster_name",
        "cluster_type",
        "custom_tags",
        "driver_node_type_id",
        "node_type_id",
        "dbu_rate",
        "start_ms",
        "end_ms",
        "run_terminal_state",
        "run_trigger_type",
        "run_task_type",
        "running_days",
        "run_cluster_states",
        "avg_cluster_share",
        "avg_overlapping_runs",
        "max_overlapping_runs",
        "worker_potential_core_h",
    ]
    + COST_COLUMNS
    + UTILIZATION_COLUMNS
)


def _running_days(start_ms: pd.Series, end_ms: pd.Series) -> list:
    """Every UTC calendar date between run start and run end, inclusive."""
    start_dates = ms_series_to_timestamp(start_ms).dt.normalize()
    end_dates = ms_series_to_timestamp(end_ms).dt.normalize()
    return [
        [ts.date() for ts in pd.date_range(start, end, freq="D")]
        for start, end in zip(start_dates, end_dates)
    ]


class JobRunCostAllocator:
    """
    Allocate cluster state slice costs to job runs.

    Handles run-boundary slice splits and fair sharing of interactive
    clusters between concurrent runs so no slice cost is counted twice.
    """

    SHARED_CLUSTER_TYPE = "existing"
    NEW_CLUSTER_TYPE = "new"

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize job run cost allocator.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self.logger = get_logger("job_run_cost_allocator")
        self.logger.info("Initialized job run cost allocator")

    def _prepare_runs(self, job_runs: pd.DataFrame) -> pd.DataFrame:
        missing_cols = [c for c in REQUIRED_RUN_COLUMNS if c not in job_runs.columns]
        if missing_cols:
            raise ValueError(f"Job runs DataFrame missing required columns: {missing_cols}")

        runs = job_runs.copy()
        for col in OPTIONAL_RUN_COLUMNS:
            if col not in runs.columns:
                runs[col] = np.nan

        incomplete = runs[["cluster_id", "start_ms", "end_ms"]].isna().any(axis=1)
        if incomplete.any():
            self.logger.warning(
                "Skipping job runs without cluster or resolved start/end",
                runs=int(incomplete.sum()),
            )
            runs = runs[~incomplete]

        cluster_type = runs["job_cluster_type"].fillna("").astype(str).str.lower()
        runs["_shared"] = cluster_type == self.SHARED_CLUSTER_TYPE
        runs["_new_cluster"] = cluster_type == self.NEW_CLUSTER_TYPE

        return runs.rename(columns={"start_ms": "run_start_ms", "end_ms": "run_end_ms"})

    def split_run_pieces(self, state_slices: pd.DataFrame, runs: pd.DataFrame) -> pd.DataFrame:
        """
        Cut every run into init / intermediate / terminal pieces.

        Args:
            state_slices: Priced state slices (one row per slice)
            runs: Prepared job runs (run_start_ms / run_end_ms)

        Returns:
            One row per (run, slice) piece with runtime_ms and the clipped
            run_state_start_ms / run_state_end_ms window
        """
        slices = state_slices[REQUIRED_SLICE_COLUMNS].copy()
        slices["_slice_id"] = np.arange(len(slices))

        df = runs.merge(slices, on=["org_id", "cluster_id"], how="inner")
        run_start = df["run_start_ms"]
        run_end = df["run_end_ms"]

        is_init = (df["start_ms"] <= run_start) & (run_start <= df["end_ms"])
        # run end is exclusive: a slice opening exactly at run end is not touched
        is_terminal = (df["start_ms"] < run_end) & (run_end <= df["end_ms"]) & ~is_init
        is_intermediate = (df["start_ms"] > run_start) & (df["end_ms"] < run_end) & ~is_init & ~is_terminal

        init_from_slice_start = df["state_type"].isin(INIT_STATE_TYPES) | df["_new_cluster"]
        init_start = df["start_ms"].where(init_from_slice_start, run_start)

        df["piece_type"] = np.select(
            [is_init, is_terminal, is_intermediate], ["init", "terminal", "intermediate"], default=""
        )
        df["runtime_ms"] = np.select(
            [is_init, is_terminal, is_intermediate],
            [
                np.minimum(df["end_ms"], run_end) - init_start,
                run_end - np.maximum(df["start_ms"], run_start),
                df["end_ms"] - df["start_ms"],
            ],
            default=0,
        )

        pieces = df[df["piece_type"] != ""].copy()
        pieces["runtime_ms"] = pieces["runtime_ms"].clip(lower=0).astype(float)
        pieces["run_state_start_ms"] = np.maximum(pieces["start_ms"], pieces["run_start_ms"])
        pieces["run_state_end_ms"] = np.minimum(pieces["end_ms"], pieces["run_end_ms"])
        # runtime_ms is measured from here, the slice start for init pieces counted from the slice
        pieces["_runtime_start_ms"] = pieces["run_state_end_ms"] - pieces["runtime_ms"]

        self.logger.info(
            "Split job runs into cluster state pieces",
            pieces=len(pieces),
            init=int((pieces["piece_type"] == "init").sum()),
            intermediate=int((pieces["piece_type"] == "intermediate").sum()),
            terminal=int((pieces["piece_type"] == "terminal").sum()),
        )
        return pieces.reset_index(drop=True)

    def compute_concurrency(self, pieces: pd.DataFrame) -> pd.DataFrame:
        """
        Overlap of shared runs within each slice.

        Every pair of shared-cluster pieces on the same slice contributes
        max(0, min(ends) - max(starts)), taken over the intervals runtime_ms
        was measured on. The piece overlaps itself, so a run alone on a slice
        has cumulative runtime equal to its own runtime.

        Returns:
            pieces with cumulative_overlapping_runtime_ms and overlapping_run_states
        """
        pieces = pieces.copy()
        pieces["cumulative_overlapping_runtime_ms"] = 0.0
        pieces["overlapping_run_states"] = 0

        shared = pieces.loc[pieces["_shared"], ["_slice_id", "run_id", "_runtime_start_ms", "run_state_end_ms"]]
        if shared.empty:
            return pieces

        pairs = shared.merge(shared, on="_slice_id", suffixes=("", "_other"))
        overlap = (
            np.minimum(pairs["run_state_end_ms"], pairs["run_state_end_ms_other"])
            - np.maximum(pairs["_runtime_start_ms"], pairs["_runtime_start_ms_other"])
        ).clip(lower=0)
        pairs["overlap_ms"] = overlap.astype(float)
        pairs["overlaps_other"] = (overlap > 0) & (pairs["run_id"] != pairs["run_id_other"])

        concurrency = (
            pairs.groupby(["_slice_id", "run_id"], sort=False)
            .agg(
                cumulative_overlapping_runtime_ms=("overlap_ms", "sum"),
                overlapping_run_states=("overlaps_other", "sum"),
            )
            .reset_index()
        )

        pieces = pieces.drop(columns=["cumulative_overlapping_runtime_ms", "overlapping_run_states"]).merge(
            concurrency, on=["_slice_id", "run_id"], how="left"
        )
        pieces["cumulative_overlapping_runtime_ms"] = pieces["cumulative_overlapping_runtime_ms"].fillna(0.0)
        pieces["overlapping_run_states"] = pieces["overlapping_run_states"].fillna(0).astype(int)

        self.logger.info(
            "Computed shared cluster concurrency",
            shared_pieces=len(shared),
            concurrent_pieces=int((pieces["overlapping_run_states"] > 0).sum()),
        )
        return pieces

    def scale_costs(self, pieces: pd.DataFrame) -> pd.DataFrame:
        """Apply run_state_utilization × state_utilization_percent to each piece."""
        pieces = pieces.copy()
        cumulative = pieces["cumulative_overlapping_runtime_ms"]

        fair_share = (pieces["runtime_ms"] / cumulative.where(cumulative > 0)).clip(upper=1.0).fillna(1.0)
        pieces["run_state_utilization"] = fair_share.where(pieces["_shared"], 1.0)

        uptime_ms = pieces["uptime_seconds"].astype(float) * 1000
        pieces["state_utilization_percent"] = (pieces["runtime_ms"] / uptime_ms.where(uptime_ms > 0)).fillna(0.0)

        factor = pieces["state_utilization_percent"] * pieces["run_state_utilization"]
        for col in SCALED_COLUMNS:
            pieces[col] = pieces[col].astype(float) * factor

        return pieces

    def aggregate_runs(self, pieces: pd.DataFrame) -> pd.DataFrame:
        """
        Roll pieces up to one fact row per (org_id, run_id).

        Descriptive attributes come from the run's last piece. A run that
        touched an unpriced slice keeps null costs.
        """
        pieces = pieces.sort_values(RUN_KEYS + ["run_state_start_ms"], kind="mergesort")
        grouped = pieces.groupby(RUN_KEYS, sort=False)

        sums = grouped[SCALED_COLUMNS].sum()
        has_null = pieces[SCALED_COLUMNS].isna().groupby([pieces[k] for k in RUN_KEYS], sort=False).any()
        sums = sums.mask(has_null)

        stats = grouped.agg(
            run_cluster_states=("_slice_id", "size"),
            avg_cluster_share=("run_state_utilization", "mean"),
            avg_overlapping_runs=("overlapping_run_states", "mean"),
            max_overlapping_runs=("overlapping_run_states", "max"),
        )

        last_piece = pieces.drop_duplicates(subset=RUN_KEYS, keep="last").set_index(RUN_KEYS)
        facts = last_piece.drop(columns=SCALED_COLUMNS).join(sums).join(stats).reset_index()

        facts["total_driver_cost"] = facts["driver_compute_cost"] + facts["driver_dbu_cost"]
        facts["total_worker_cost"] = facts["worker_compute_cost"] + facts["worker_dbu_cost"]
        facts["total_compute_cost"] = facts["driver_compute_cost"] + facts["worker_compute_cost"]
        facts["total_dbu_cost"] = facts["driver_dbu_cost"] + facts["worker_dbu_cost"]
        facts["total_cost"] = facts["total_driver_cost"] + facts["total_worker_cost"]

        for col in COST_COLUMNS + ["worker_potential_core_h"]:
            facts[col] = safe_round(facts[col], 6)
        facts["avg_cluster_share"] = safe_round(facts["avg_cluster_share"], 4)
        facts["avg_overlapping_runs"] = safe_round(facts["avg_overlapping_runs"], 2)
        facts["max_overlapping_runs"] = facts["max_overlapping_runs"].astype(int)

        facts["cluster_type"] = np.where(facts["_new_cluster"].astype(bool), "automated", "interactive")
        facts["start_ms"] = facts["run_start_ms"]
        facts["end_ms"] = facts["run_end_ms"]
        facts["running_days"] = _running_days(facts["start_ms"], facts["end_ms"])
        facts = facts.rename(
            columns={
                "terminal_state": "run_terminal_state",
                "trigger_type": "run_trigger_type",
                "task_type": "run_task_type",
            }
        )
        for col in UTILIZATION_COLUMNS:
            facts[col] = np.nan

        return facts[FACT_COLUMNS]

    def allocate(self, state_slices: pd.DataFrame, job_runs: pd.DataFrame) -> pd.DataFrame:
        """
        Allocate slice costs to job runs.

        Args:
            state_slices: Output of ClusterStateIntervalBuilder.build_intervals
            job_runs: Job runs with resolved start_ms / end_ms

        Returns:
            One job_run_cost_potential_fact row per run that touched a slice
        """
        with PerformanceTimer("Allocate costs to job runs", self.logger):
            if state_slices is None or state_slices.empty:
                self.logger.warning("No cluster state slices, skipping job run allocation")
                return pd.DataFrame(columns=FACT_COLUMNS)

            missing_cols = [c for c in REQUIRED_SLICE_COLUMNS if c not in state_slices.columns]
            if missing_cols:
                raise ValueError(f"State slices DataFrame missing required columns: {missing_cols}")

            runs = self._prepare_runs(job_runs)
            if runs.empty:
                self.logger.warning("No job runs to allocate")
                return pd.DataFrame(columns=FACT_COLUMNS)

            pieces = self.split_run_pieces(state_slices, runs)
            if pieces.empty:
                self.logger.warning("No job run overlaps a cluster state slice", runs=len(runs))
                return pd.DataFrame(columns=FACT_COLUMNS)

            pieces = self.compute_concurrency(pieces)
            pieces = self.scale_costs(pieces)
            facts = self.aggregate_runs(pieces)

            unmatched = len(runs) - len(facts)
            if unmatched:
                self.logger.warning("Job runs without cluster state pieces dropped", runs=unmatched)

            self.logger.info(
                "✓ Allocated costs to job runs",
                runs=len(facts),
                pieces=len(pieces),
                total_cost=round(float(facts["total_cost"].sum()), 6),
                allocated_core_h=round(float(facts["worker_potential_core_h"].sum()), 4),
            )
            return facts
