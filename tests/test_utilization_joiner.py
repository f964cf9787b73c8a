"""
Unit tests for Utilization Joiner

Tests job group parsing, task runtime summaries and utilization enrichment.
"""

import numpy as np
import pandas as pd
import pytest

from clustercost.job_run_cost_allocator import UTILIZATION_COLUMNS
from clustercost.utilization_joiner import TASK_RUNTIME_COLUMNS, UtilizationJoiner


@pytest.fixture
def joiner(standard_config):
    return UtilizationJoiner(standard_config)


@pytest.fixture
def spark_jobs():
    """Job 77 run 3 found through its job group, a second job with no run link."""
    return pd.DataFrame({
        "org_id": ["org-1", "org-1"],
        "spark_context_id": [1, 2],
        "job_group_id": ["1_job-77-run-3-action-9", "adhoc-query"],
        "stage_ids": [[10, 11], [20]],
    })


@pytest.fixture
def spark_tasks():
    return pd.DataFrame({
        "org_id": ["org-1"] * 4,
        "spark_context_id": [1, 1, 1, 2],
        "stage_id": [10, 11, 11, 20],
        "runtime_ms": [3_600_000, 1_800_000, 1_800_000, 999],
    })


def make_facts(rows):
    """Cost facts from (job_id, id_in_job, worker_potential_core_h) tuples."""
    facts = pd.DataFrame(rows, columns=["job_id", "id_in_job", "worker_potential_core_h"])
    facts.insert(0, "org_id", "org-1")
    for col in UTILIZATION_COLUMNS:
        facts[col] = np.nan
    return facts


class TestSummarizeTaskRuntime:
    """Test suite for per-run task runtime."""

    def test_runtime_summed_per_job_run(self, joiner, spark_jobs, spark_tasks):
        """Tasks of every stage of the run's spark jobs are summed."""
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks)

        assert list(summary.columns) == TASK_RUNTIME_COLUMNS
        assert len(summary) == 1
        assert summary["db_job_id"].iloc[0] == 77
        assert summary["db_id_in_job"].iloc[0] == 3
        assert summary["spark_task_runtime_ms"].iloc[0] == 7_200_000

    def test_explicit_ids_take_precedence(self, joiner, spark_jobs, spark_tasks):
        """Recorded job ids win over the parsed job group."""
        jobs = spark_jobs.assign(db_job_id=[88, np.nan], db_id_in_job=[1, np.nan])

        summary = joiner.summarize_task_runtime(jobs, spark_tasks)

        assert summary["db_job_id"].iloc[0] == 88
        assert summary["db_id_in_job"].iloc[0] == 1

    def test_no_matching_tasks(self, joiner, spark_jobs, spark_tasks):
        """Unrelated tasks give an empty summary."""
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks.assign(spark_context_id=99))

        assert summary.empty
        assert list(summary.columns) == TASK_RUNTIME_COLUMNS

    def test_missing_task_columns_raise(self, joiner, spark_jobs, spark_tasks):
        """Tasks without runtime are rejected."""
        with pytest.raises(ValueError, match="missing required columns"):
            joiner.summarize_task_runtime(spark_jobs, spark_tasks.drop(columns=["runtime_ms"]))


class TestEnrich:
    """Test suite for adding utilization to cost facts."""

    def test_utilization_is_runtime_over_potential(self, joiner, spark_jobs, spark_tasks):
        """2 task hours against 4 potential core hours is 50%."""
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks)

        enriched = joiner.enrich(make_facts([(77, 3, 4.0)]), summary)

        assert enriched["spark_task_runtime_ms"].iloc[0] == 7_200_000
        assert enriched["spark_task_runtime_h"].iloc[0] == pytest.approx(2.0)
        assert enriched["job_run_cluster_util"].iloc[0] == pytest.approx(0.5)

    def test_zero_potential_gives_null_utilization(self, joiner, spark_jobs, spark_tasks):
        """No potential capacity means utilization is undefined."""
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks)

        enriched = joiner.enrich(make_facts([(77, 3, 0.0)]), summary)

        assert enriched["spark_task_runtime_h"].iloc[0] == pytest.approx(2.0)
        assert pd.isna(enriched["job_run_cluster_util"].iloc[0])

    def test_run_without_telemetry_stays_null(self, joiner, spark_jobs, spark_tasks):
        """Runs with no spark tasks are null, not zero."""
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks)

        enriched = joiner.enrich(make_facts([(77, 3, 4.0), (12, 1, 4.0)]), summary)

        assert enriched[UTILIZATION_COLUMNS].iloc[1].isna().all()
        assert len(enriched) == 2

    def test_no_telemetry_for_window(self, joiner):
        """Without telemetry tables every utilization column is null."""
        enriched = joiner.enrich(make_facts([(77, 3, 4.0)]), None)

        assert enriched[UTILIZATION_COLUMNS].isna().all().all()

    def test_column_order_preserved(self, joiner, spark_jobs, spark_tasks):
        """Enrichment does not reorder the fact columns."""
        facts = make_facts([(77, 3, 4.0)])
        summary = joiner.summarize_task_runtime(spark_jobs, spark_tasks)

        enriched = joiner.enrich(facts, summary)

        assert list(enriched.columns) == list(facts.columns)
