"""
Integration tests for the cluster cost pipeline and CLI entry point.

Runs the full validate -> reconstruct -> slice -> allocate -> utilization
chain on a one-cluster, one-run scenario.
"""

import argparse
import copy
from datetime import date
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from clustercost.config_loader import DEFAULT_CONFIG
from clustercost.exceptions import ConfigurationError
from clustercost.main import EXIT_CONFIGURATION_ERROR, EXIT_FAILURE, EXIT_OK, run_pipeline, write_local_output
from clustercost.pipeline import ClusterCostPipeline, PipelineInputs
from clustercost.utils import TimeWindow

from .conftest import T0, WINDOW_FROM, WINDOW_UNTIL

# (run end - slice start) / slice uptime: cost share of the RUNNING slice
RUN_SHARE = 1_740_000 / 3_539_999
RUNNING_UPTIME_H = 3_539.999 / 3600


@pytest.fixture
def job_runs():
    """Dedicated run from RUNNING until 30 minutes after creation."""
    return pd.DataFrame({
        "org_id": ["org-1"],
        "run_id": [1001],
        "job_id": [77],
        "id_in_job": [1],
        "cluster_id": ["c1"],
        "job_cluster_type": ["new"],
        "start_ms": [T0 + 60_000],
        "end_ms": [T0 + 1_800_000],
        "terminal_state": ["SUCCESS"],
        "trigger_type": ["PERIODIC"],
        "task_type": ["NOTEBOOK"],
    })


@pytest.fixture
def inputs(lifecycle_events, price_catalog, cluster_spec, job_runs):
    return PipelineInputs(
        events=lifecycle_events,
        price_catalog=price_catalog,
        job_runs=job_runs,
        cluster_spec=cluster_spec,
    )


@pytest.fixture
def pipeline(standard_config):
    return ClusterCostPipeline(standard_config)


class TestClusterCostPipeline:
    """Test suite for ClusterCostPipeline."""

    def test_end_to_end_lifecycle(self, pipeline, inputs, window):
        """One cluster lifecycle and a dedicated run over part of it."""
        result = pipeline.run(inputs, window)

        slices = result.cluster_state_fact
        assert list(slices["state_type"]) == ["CREATING", "RUNNING", "TERMINATING"]
        assert list(slices["databricks_billable"]) == [False, True, False]
        assert slices["uptime_in_state_h"].iloc[1] == pytest.approx(0.983, abs=1e-3)

        facts = result.job_run_cost_fact
        assert len(facts) == 1
        fact = facts.iloc[0]
        assert fact["run_cluster_states"] == 1
        assert fact["avg_cluster_share"] == 1.0
        assert fact["total_cost"] == pytest.approx(slices["total_cost"].iloc[1] * RUN_SHARE, abs=1e-5)
        assert fact["total_cost"] == pytest.approx(1.425 * 1_740_000 / 3_600_000, abs=1e-5)

    def test_no_telemetry_leaves_utilization_null(self, pipeline, inputs, window):
        """Without spark tables the utilization columns are null."""
        facts = pipeline.run(inputs, window).job_run_cost_fact

        assert facts[["spark_task_runtime_ms", "spark_task_runtime_h", "job_run_cluster_util"]].isna().all().all()

    def test_telemetry_joined(self, pipeline, inputs, window):
        """Spark task runtime of the run is compared with its potential core hours."""
        inputs.spark_jobs = pd.DataFrame({
            "org_id": ["org-1"],
            "spark_context_id": [1],
            "job_group_id": ["1_job-77-run-1-action-1"],
            "stage_ids": [[10]],
        })
        inputs.spark_tasks = pd.DataFrame({
            "org_id": ["org-1"],
            "spark_context_id": [1],
            "stage_id": [10],
            "runtime_ms": [3_600_000],
        })

        fact = pipeline.run(inputs, window).job_run_cost_fact.iloc[0]

        potential = 4 * 2 * RUNNING_UPTIME_H * RUN_SHARE
        assert fact["worker_potential_core_h"] == pytest.approx(potential, abs=1e-5)
        assert fact["spark_task_runtime_h"] == pytest.approx(1.0)
        assert fact["job_run_cluster_util"] == pytest.approx(1.0 / potential, abs=1e-3)

    def test_rerun_is_idempotent(self, pipeline, inputs, window):
        """Same window, same inputs, same facts."""
        first = pipeline.run(inputs, window)
        second = pipeline.run(inputs, window)

        pd.testing.assert_frame_equal(first.job_run_cost_fact, second.job_run_cost_fact)
        pd.testing.assert_frame_equal(
            first.cluster_state_fact.drop(columns=["custom_tags"]),
            second.cluster_state_fact.drop(columns=["custom_tags"]),
        )

    def test_invalid_catalog_aborts_before_reconstruction(self, pipeline, inputs, window, price_catalog):
        """A catalog gap raises before any events are touched."""
        inputs.price_catalog = pd.concat([price_catalog, price_catalog], ignore_index=True).assign(
            active_from=[date(2023, 1, 1), date(2023, 12, 1)],
            active_until=[date(2023, 6, 1), None],
        )
        pipeline.reconstructor = MagicMock()

        with pytest.raises(ConfigurationError) as excinfo:
            pipeline.run(inputs, window)

        assert excinfo.value.bad_keys == ["m5.xlarge"]
        pipeline.reconstructor.reconstruct.assert_not_called()

    def test_window_without_events(self, pipeline, inputs):
        """A window with no cluster activity produces empty fact tables."""
        result = pipeline.run(inputs, TimeWindow.from_values("2024-02-01", "2024-02-02"))

        assert result.cluster_state_fact.empty
        assert result.job_run_cost_fact.empty

    def test_open_ended_window_rejected(self, pipeline, inputs):
        """until is required."""
        with pytest.raises(ValueError, match="until"):
            pipeline.run(inputs, TimeWindow(T0, None))


def make_args(**overrides):
    args = {
        "config": None,
        "from_time": None,
        "until_time": None,
        "input_path": None,
        "output_path": None,
        "no_db": True,
        "log_level": "WARNING",
    }
    args.update(overrides)
    return argparse.Namespace(**args)


@pytest.fixture
def cli_config():
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["pipeline"]["from_time"] = WINDOW_FROM
    config["pipeline"]["until_time"] = WINDOW_UNTIL
    return config


@pytest.fixture
def tables(lifecycle_events, price_catalog, cluster_spec, job_runs):
    return {
        "events": lifecycle_events,
        "price_catalog": price_catalog,
        "job_runs": job_runs,
        "cluster_spec": cluster_spec,
        "cluster_snapshot": None,
        "spark_jobs": None,
        "spark_tasks": None,
    }


class TestRunPipeline:
    """Test suite for the CLI entry point."""

    def test_successful_run(self, cli_config, tables, tmp_path):
        """Facts are computed and written to the local output directory."""
        with patch("clustercost.main.get_config", return_value=cli_config), \
                patch("clustercost.main.ParquetReader") as reader_cls:
            reader_cls.return_value.read_inputs.return_value = tables

            exit_code = run_pipeline(make_args(output_path=str(tmp_path)))

        assert exit_code == EXIT_OK
        assert len(pd.read_parquet(tmp_path / "cluster_state_fact.parquet")) == 3
        assert len(pd.read_parquet(tmp_path / "job_run_cost_potential_fact.parquet")) == 1

    def test_invalid_catalog_exit_code(self, cli_config, tables):
        """An invalid price catalog exits with the configuration error code."""
        tables["price_catalog"] = pd.concat([tables["price_catalog"]] * 2, ignore_index=True)

        with patch("clustercost.main.get_config", return_value=cli_config), \
                patch("clustercost.main.ParquetReader") as reader_cls:
            reader_cls.return_value.read_inputs.return_value = tables

            assert run_pipeline(make_args()) == EXIT_CONFIGURATION_ERROR

    def test_missing_inputs_exit_code(self, cli_config):
        """Any other failure exits with 1."""
        with patch("clustercost.main.get_config", return_value=cli_config), \
                patch("clustercost.main.ParquetReader") as reader_cls:
            reader_cls.return_value.read_inputs.side_effect = FileNotFoundError("events")

            assert run_pipeline(make_args()) == EXIT_FAILURE

    def test_db_write_requested(self, cli_config, tables):
        """write_to_db sends both fact tables to the database writer."""
        cli_config["output"]["write_to_db"] = "true"

        with patch("clustercost.main.get_config", return_value=cli_config), \
                patch("clustercost.main.ParquetReader") as reader_cls, \
                patch("clustercost.main.DatabaseWriter") as writer_cls:
            reader_cls.return_value.read_inputs.return_value = tables
            writer = writer_cls.return_value.__enter__.return_value

            exit_code = run_pipeline(make_args(no_db=False))

        assert exit_code == EXIT_OK
        writer.write_cluster_state_facts.assert_called_once()
        writer.write_job_run_cost_facts.assert_called_once()

    def test_write_local_output_encodes_tags(self, tmp_path):
        """custom_tags dicts are stored as JSON text."""
        result = MagicMock()
        result.cluster_state_fact = pd.DataFrame({"cluster_id": ["c1"], "custom_tags": [{"team": "data"}]})
        result.job_run_cost_fact = pd.DataFrame({"run_id": [1], "custom_tags": [np.nan]})

        write_local_output(result, str(tmp_path), MagicMock())

        written = pd.read_parquet(tmp_path / "cluster_state_fact.parquet")
        assert written["custom_tags"].iloc[0] == '{"team": "data"}'
