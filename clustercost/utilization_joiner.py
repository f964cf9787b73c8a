"""
Utilization Joiner

Compares what a job run could have used (potential worker core hours) with
what its Spark tasks actually ran.

Spark jobs reference the Databricks job run through their job group
(``..._job-<job_id>-run-<id_in_job>...``) when the ids are not recorded
directly. Task runtime is summed per (org_id, job_id, id_in_job).

No telemetry for the window means the utilization columns are null, never 0.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

from .job_run_cost_allocator import UTILIZATION_COLUMNS
from .utils import MS_PER_HOUR, PerformanceTimer, get_logger

JOB_GROUP_PATTERN = r"job-(\d+)-run-(\d+)"

RUN_KEYS = ["org_id", "db_job_id", "db_id_in_job"]
STAGE_KEYS = ["org_id", "spark_context_id", "stage_id"]

TASK_RUNTIME_COLUMNS = RUN_KEYS + ["spark_task_runtime_ms"]


def _as_id(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").astype("Int64")


class UtilizationJoiner:
    """Join Spark task runtime onto job run cost facts."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize utilization joiner.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self.logger = get_logger("utilization_joiner")
        self.logger.info("Initialized utilization joiner")

    def summarize_task_runtime(self, spark_jobs: pd.DataFrame, spark_tasks: pd.DataFrame) -> pd.DataFrame:
        """
        Sum Spark task runtime per job run.

        Args:
            spark_jobs: org_id, spark_context_id, stage_ids (list), job_group_id,
                        optional db_job_id / db_id_in_job
            spark_tasks: org_id, spark_context_id, stage_id, runtime_ms

        Returns:
            DataFrame (org_id, db_job_id, db_id_in_job, spark_task_runtime_ms)
        """
        with PerformanceTimer("Summarize spark task runtime", self.logger):
            missing_cols = [c for c in ["org_id", "spark_context_id", "stage_ids"] if c not in spark_jobs.columns]
            if missing_cols:
                raise ValueError(f"Spark jobs DataFrame missing required columns: {missing_cols}")
            missing_cols = [c for c in STAGE_KEYS + ["runtime_ms"] if c not in spark_tasks.columns]
            if missing_cols:
                raise ValueError(f"Spark tasks DataFrame missing required columns: {missing_cols}")

            jobs = spark_jobs.copy()
            for col in ["db_job_id", "db_id_in_job", "job_group_id"]:
                if col not in jobs.columns:
                    jobs[col] = np.nan

            from_group = jobs["job_group_id"].fillna("").astype(str).str.extract(JOB_GROUP_PATTERN)
            jobs["db_job_id"] = _as_id(jobs["db_job_id"]).fillna(_as_id(from_group[0]))
            jobs["db_id_in_job"] = _as_id(jobs["db_id_in_job"]).fillna(_as_id(from_group[1]))
            jobs = jobs.dropna(subset=["db_job_id", "db_id_in_job"])

            stages = jobs[["org_id", "spark_context_id", "stage_ids", "db_job_id", "db_id_in_job"]]
            stages = stages.explode("stage_ids").rename(columns={"stage_ids": "stage_id"})
            stages = stages.dropna(subset=["stage_id"])
            stages["stage_id"] = stages["stage_id"].astype(np.int64)
            stages = stages.drop_duplicates()

            tasks = spark_tasks[STAGE_KEYS + ["runtime_ms"]].copy()
            tasks["stage_id"] = tasks["stage_id"].astype(np.int64)

            joined = stages.merge(tasks, on=STAGE_KEYS, how="inner")
            if joined.empty:
                self.logger.warning("No spark tasks matched a job run stage")
                return pd.DataFrame(columns=TASK_RUNTIME_COLUMNS)

            summary = (
                joined.groupby(RUN_KEYS, sort=False)["runtime_ms"]
                .sum()
                .reset_index()
                .rename(columns={"runtime_ms": "spark_task_runtime_ms"})
            )

            self.logger.info(
                "✓ Summarized spark task runtime",
                spark_jobs=len(spark_jobs),
                spark_tasks=len(spark_tasks),
                job_runs=len(summary),
            )
            return summary[TASK_RUNTIME_COLUMNS]

    def enrich(self, facts: pd.DataFrame, task_runtime: Optional[pd.DataFrame]) -> pd.DataFrame:
        """
        Add spark_task_runtime_ms / _h and job_run_cluster_util to the run facts.

        Args:
            facts: job_run_cost_potential_fact rows
            task_runtime: Output of summarize_task_runtime, or None when the
                          window has no telemetry

        Returns:
            facts with the three utilization columns set (null without telemetry)
        """
        facts = facts.copy()
        if task_runtime is None:
            self.logger.warning("No spark task telemetry for window, utilization left null", runs=len(facts))
            for col in UTILIZATION_COLUMNS:
                facts[col] = np.nan
            return facts

        if facts.empty:
            return facts

        runtime = task_runtime[TASK_RUNTIME_COLUMNS].copy()
        runtime["db_job_id"] = _as_id(runtime["db_job_id"])
        runtime["db_id_in_job"] = _as_id(runtime["db_id_in_job"])

        keyed = facts.drop(columns=UTILIZATION_COLUMNS, errors="ignore").assign(
            db_job_id=_as_id(facts["job_id"]),
            db_id_in_job=_as_id(facts["id_in_job"]),
        )
        enriched = keyed.merge(runtime, on=RUN_KEYS, how="left").drop(columns=["db_job_id", "db_id_in_job"])
        enriched["spark_task_runtime_ms"] = pd.to_numeric(enriched["spark_task_runtime_ms"], errors="coerce")

        enriched["spark_task_runtime_h"] = (enriched["spark_task_runtime_ms"] / MS_PER_HOUR).round(4)
        potential = enriched["worker_potential_core_h"].astype(float)
        enriched["job_run_cluster_util"] = (
            enriched["spark_task_runtime_h"] / potential.where(potential > 0)
        ).round(4)

        matched = int(enriched["spark_task_runtime_ms"].notna().sum())
        if matched < len(enriched):
            self.logger.warning(
                "Job runs without spark task telemetry",
                runs=len(enriched) - matched,
            )
        self.logger.info("✓ Joined spark task utilization", runs=len(enriched), with_telemetry=matched)

        columns = list(facts.columns) + [c for c in UTILIZATION_COLUMNS if c not in facts.columns]
        return enriched[columns]
