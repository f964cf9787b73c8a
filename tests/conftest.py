"""
Shared pytest fixtures for all tests.

Provides a common window, price catalog, cluster spec and event builders.
"""

from datetime import date

import numpy as np
import pandas as pd
import pytest

from clustercost.utils import TimeWindow, to_epoch_ms

WINDOW_FROM = "2024-01-01T00:00:00"
WINDOW_UNTIL = "2024-01-02T00:00:00"

# 01:00 UTC inside the standard window
T0 = to_epoch_ms("2024-01-01T01:00:00")


def make_events(rows, org_id="org-1", cluster_id="c1"):
    """Build an events frame from (timestamp, event_type[, current, target, hint]) tuples."""
    records = []
    for row in rows:
        timestamp, event_type = row[0], row[1]
        current = row[2] if len(row) > 2 else np.nan
        target = row[3] if len(row) > 3 else np.nan
        hint = row[4] if len(row) > 4 else np.nan
        records.append({
            "org_id": org_id,
            "cluster_id": cluster_id,
            "timestamp": timestamp,
            "event_type": event_type,
            "current_node_count": current,
            "target_node_count": target,
            "cluster_size_hint": hint,
            "autoscale_min_workers": np.nan,
        })
    return pd.DataFrame(records)


@pytest.fixture
def standard_config():
    """Standard configuration for all tests."""
    return {
        "pipeline": {
            "from_time": WINDOW_FROM,
            "until_time": WINDOW_UNTIL,
            "automated_cluster_pattern": r"^job-\d+-run-\d+",
        },
        "performance": {
            "parallel_partitions": False,
            "partitions_per_chunk": 500,
            "lookaround_rows": 1000,
        },
    }


@pytest.fixture
def window():
    """Standard one-day processing window."""
    return TimeWindow.from_values(WINDOW_FROM, WINDOW_UNTIL)


@pytest.fixture
def price_catalog():
    """One open-ended m5.xlarge record active well before the window."""
    return pd.DataFrame({
        "node_type_key": ["m5.xlarge"],
        "active_from": [date(2023, 12, 1)],
        "active_until": [None],
        "vcpus": [4.0],
        "memory_gb": [16.0],
        "compute_contract_price": [0.2],
        "hourly_dbus": [0.5],
        "interactive_dbu_price": [0.55],
        "automated_dbu_price": [0.15],
        "sql_compute_dbu_price": [0.22],
        "jobs_light_dbu_price": [0.07],
    })


@pytest.fixture
def cluster_spec():
    """Spec record for cluster c1 recorded just before T0."""
    return pd.DataFrame({
        "org_id": ["org-1"],
        "cluster_id": ["c1"],
        "timestamp": [T0 - 1000],
        "cluster_name": ["analytics-1"],
        "custom_tags": [{"team": "data"}],
        "driver_node_type_id": ["m5.xlarge"],
        "node_type_id": [" M5.XLARGE"],
        "spark_version": ["13.3.x-scala2.12"],
    })


@pytest.fixture
def lifecycle_events():
    """CREATING, RUNNING one minute later, TERMINATING one hour after creation."""
    return make_events([
        (T0, "CREATING", np.nan, np.nan, 2),
        (T0 + 60_000, "RUNNING", 2, 2),
        (T0 + 3_600_000, "TERMINATING"),
    ])
