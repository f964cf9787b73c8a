"""
Unit tests for Database Writer

psycopg2 is mocked; tests cover row preparation and batching.
"""

from datetime import date
from unittest.mock import MagicMock, call, patch

import numpy as np
import pandas as pd
import pytest

from clustercost.db_writer import CLUSTER_STATE_TABLE, JOB_RUN_COST_TABLE, DatabaseWriter


@pytest.fixture
def db_config():
    return {
        "postgresql": {
            "host": "localhost",
            "port": 5432,
            "database": "clustercost",
            "user": "clustercost",
            "password": "secret",
            "schema": "cost",
        }
    }


@pytest.fixture
def writer(db_config):
    writer = DatabaseWriter(db_config)
    writer.connection = MagicMock()
    return writer


@pytest.fixture
def facts():
    return pd.DataFrame({
        "run_id": [1, 2, 3],
        "custom_tags": [{"team": "data"}, None, '{"team": "ml"}'],
        "running_days": [[date(2024, 1, 1)], [date(2024, 1, 1), date(2024, 1, 2)], None],
        "total_cost": [1.5, np.nan, 0.0],
    })


class TestPrepareRows:
    """Test suite for DatabaseWriter.prepare_rows."""

    def test_nan_becomes_none(self, facts):
        rows = DatabaseWriter.prepare_rows(facts)

        assert rows[1][3] is None
        assert rows[0][3] == 1.5

    def test_tags_serialized_as_json(self, facts):
        rows = DatabaseWriter.prepare_rows(facts)

        assert rows[0][1] == '{"team": "data"}'
        assert rows[1][1] is None
        assert rows[2][1] == '{"team": "ml"}'

    def test_string_columns_keep_none(self):
        """Missing strings and tags are sent as NULL, never NaN."""
        df = pd.DataFrame({
            "cluster_name": ["analytics-1", None],
            "custom_tags": [None, None],
            "total_cost": [np.nan, 2.0],
        })

        rows = DatabaseWriter.prepare_rows(df)

        assert rows == [("analytics-1", None, None), (None, None, 2.0)]

    def test_running_days_as_list(self, facts):
        rows = DatabaseWriter.prepare_rows(facts)

        assert rows[1][2] == [date(2024, 1, 1), date(2024, 1, 2)]
        assert rows[2][2] is None


class TestWriteFactTable:
    """Test suite for batch inserts."""

    @patch("clustercost.db_writer.execute_values")
    def test_batches_and_commits(self, mock_execute_values, writer, facts):
        """Rows are inserted in batches and committed once."""
        inserted = writer.write_fact_table(facts, JOB_RUN_COST_TABLE, batch_size=2)

        assert inserted == 3
        assert mock_execute_values.call_count == 2
        query = mock_execute_values.call_args_list[0][0][1]
        assert query == (
            f"INSERT INTO cost.{JOB_RUN_COST_TABLE} (run_id, custom_tags, running_days, total_cost) VALUES %s"
        )
        writer.connection.commit.assert_called_once()

    @patch("clustercost.db_writer.execute_values")
    def test_failure_rolls_back(self, mock_execute_values, writer, facts):
        """An insert error rolls back and propagates."""
        mock_execute_values.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            writer.write_fact_table(facts, JOB_RUN_COST_TABLE)

        writer.connection.rollback.assert_called_once()
        writer.connection.commit.assert_not_called()

    def test_empty_frame_skipped(self, writer):
        assert writer.write_fact_table(pd.DataFrame(), CLUSTER_STATE_TABLE) == 0
        writer.connection.cursor.assert_not_called()

    @patch("clustercost.db_writer.execute_values")
    def test_truncate_first(self, mock_execute_values, writer, facts):
        writer.write_fact_table(facts, CLUSTER_STATE_TABLE, truncate=True)

        cursor = writer.connection.cursor.return_value.__enter__.return_value
        assert call(f"TRUNCATE TABLE cost.{CLUSTER_STATE_TABLE}") in cursor.execute.call_args_list

    @patch("clustercost.db_writer.execute_values")
    def test_table_helpers(self, mock_execute_values, writer, facts):
        writer.write_cluster_state_facts(facts)
        writer.write_job_run_cost_facts(facts)

        queries = [c[0][1] for c in mock_execute_values.call_args_list]
        assert queries[0].startswith(f"INSERT INTO cost.{CLUSTER_STATE_TABLE} ")
        assert queries[1].startswith(f"INSERT INTO cost.{JOB_RUN_COST_TABLE} ")


class TestConnection:
    """Test suite for connection handling."""

    @patch("clustercost.db_writer.psycopg2.connect")
    def test_context_manager(self, mock_connect, db_config):
        connection = mock_connect.return_value

        with DatabaseWriter(db_config) as writer:
            assert writer.connection is connection

        mock_connect.assert_called_once_with(
            host="localhost", port=5432, database="clustercost", user="clustercost", password="secret"
        )
        connection.close.assert_called_once()

    def test_connectivity(self, writer):
        cursor = writer.connection.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = (1,)

        assert writer.test_connectivity()

    def test_connectivity_failure(self, writer):
        writer.connection.cursor.side_effect = RuntimeError("down")

        assert not writer.test_connectivity()
