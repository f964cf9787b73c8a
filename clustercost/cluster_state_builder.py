"""
Cluster State Interval Builder

Turns the reconstructed event timeline into contiguous, non-overlapping
cluster state slices and prices each slice against the effective-dated node
catalog.

Key Logic:
1. Seed each cluster with its last non-terminating state from before the
   window so incremental runs don't see a fake "cluster just started"
2. Attach cluster name / node types: nearest prior spec record, else the
   immediately following one (live spec first, snapshot fills the gaps)
3. Every event opens a slice that ends 1ms before the next event; the
   trailing open slice is dropped unless it is a TERMINATING slice, which is
   closed at the end of the window
4. Uptime since last reset restarts after TERMINATING / RESTARTING / EDITED
   or whenever the cluster is not running
5. Driver/worker specs are joined where the slice start falls in
   [active_from, active_until) of the catalog entry
6. Costs:
       compute = compute_contract_price × quantity × uptime_h   (cloud_billable)
       dbu     = hourly_dbus × dbu_rate × quantity × uptime_h   (databricks_billable)
   driver quantity is 1, worker compute uses target nodes, worker DBUs use
   current nodes. A slice with no catalog match keeps null costs.
"""

import re
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .event_state_reconstructor import PARTITION_KEYS, TERMINATING
from .utils import (
    MS_PER_SECOND,
    PerformanceTimer,
    TimeWindow,
    convert_seconds_to_hours,
    get_logger,
    ms_series_to_timestamp,
    normalize_node_type_series,
    to_epoch_ms,
)

RESET_TYPES = ["TERMINATING", "RESTARTING", "EDITED"]
NON_BILLABLE_TYPES = ["STARTING", "TERMINATING", "CREATING", "RESTARTING"]

DEFAULT_AUTOMATED_PATTERN = r"^job-\d+-run-\d+"

METADATA_COLUMNS = ["cluster_name", "custom_tags", "driver_node_type_id", "node_type_id", "spark_version"]

# catalog column -> slice column suffix
NODE_SPEC_COLUMNS = {
    "vcpus": "vcpus",
    "memory_gb": "memory_gb",
    "compute_contract_price": "compute_price",
    "hourly_dbus": "hourly_dbus",
    "interactive_dbu_price": "interactive_dbu_price",
    "automated_dbu_price": "automated_dbu_price",
}

COST_COLUMNS = [
    "driver_compute_cost",
    "worker_compute_cost",
    "driver_dbu_cost",
    "worker_dbu_cost",
    "total_compute_cost",
    "total_dbu_cost",
    "total_driver_cost",
    "total_worker_cost",
    "total_cost",
]

SLICE_COLUMNS = [
    "org_id",
    "cluster_id",
    "cluster_name",
    "custom_tags",
    "state_type",
    "start_ms",
    "end_ms",
    "timestamp_state_start",
    "timestamp_state_end",
    "state_date",
    "driver_node_type_id",
    "node_type_id",
    "current_node_count",
    "target_node_count",
    "is_running",
    "counter_reset",
    "reset_partition",
    "uptime_seconds",
    "uptime_since_last_reset_seconds",
    "uptime_in_state_h",
    "cloud_billable",
    "databricks_billable",
    "is_automated",
    "dbu_rate",
    "days_in_state",
    "worker_potential_core_h",
    "core_hours",
    "driver_vcpus",
    "driver_compute_price",
    "driver_hourly_dbus",
    "worker_vcpus",
    "worker_compute_price",
    "worker_hourly_dbus",
] + COST_COLUMNS

EVENT_COLUMNS = PARTITION_KEYS + [
    "timestamp",
    "event_type",
    "is_running",
    "current_node_count",
    "target_node_count",
    "event_order",
]


def _billable_cost(billable: pd.Series, amount: pd.Series) -> pd.Series:
    """Cost when billable (null when price is unknown), 0 otherwise."""
    return pd.Series(np.where(billable, amount, 0.0), index=amount.index, dtype=float)


class ClusterStateIntervalBuilder:
    """Build priced cluster state slices from reconstructed events."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize cluster state interval builder.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self.logger = get_logger("cluster_state_builder")

        pipeline_config = self.config.get("pipeline", {})
        self.automated_pattern = re.compile(
            pipeline_config.get("automated_cluster_pattern", DEFAULT_AUTOMATED_PATTERN)
        )

        self.logger.info(
            "Initialized cluster state interval builder",
            automated_cluster_pattern=self.automated_pattern.pattern,
        )

    def select_prior_states(self, denoised_before: pd.DataFrame) -> pd.DataFrame:
        """
        Pick the final state of each cluster before the window.

        When several events share the final timestamp and one is TERMINATING
        the cluster is considered terminated; otherwise the last event in
        timeline order wins. Terminated clusters are not carried forward:
        their closing slice was already emitted by the previous window.

        Args:
            denoised_before: Reconstructed events strictly before the window

        Returns:
            At most one non-terminating event per cluster
        """
        if denoised_before is None or denoised_before.empty:
            return pd.DataFrame(columns=EVENT_COLUMNS)

        latest = denoised_before[denoised_before["rnk"] == 1].copy()
        latest["_is_terminating"] = latest["event_type"] == TERMINATING
        latest["_has_terminating"] = latest.groupby(PARTITION_KEYS)["_is_terminating"].transform("any")

        final = latest[(latest["rn"] == 1) & ~latest["_has_terminating"]]
        final = final[final["event_type"] != TERMINATING]

        self.logger.info(
            "Selected prior cluster states",
            clusters_before=denoised_before.groupby(PARTITION_KEYS).ngroups,
            carried_forward=len(final),
        )
        return final[EVENT_COLUMNS].reset_index(drop=True)

    def _lookup_when(self, events: pd.DataFrame, lookup: Optional[pd.DataFrame]) -> pd.DataFrame:
        """As-of lookup: nearest record at or before the event, else the next one."""
        result = pd.DataFrame(np.nan, index=events.index, columns=METADATA_COLUMNS, dtype=object)
        if lookup is None or lookup.empty:
            return result

        lookup = lookup.copy()
        for col in METADATA_COLUMNS:
            if col not in lookup.columns:
                lookup[col] = np.nan
        lookup = lookup.dropna(subset=["timestamp"])
        lookup["timestamp"] = lookup["timestamp"].astype(np.int64)
        lookup = lookup[PARTITION_KEYS + ["timestamp"] + METADATA_COLUMNS].assign(_matched=True)
        lookup = lookup.sort_values("timestamp", kind="mergesort")

        left = events[PARTITION_KEYS + ["timestamp"]].assign(_row=events.index)
        left["timestamp"] = left["timestamp"].astype(np.int64)
        left = left.sort_values("timestamp", kind="mergesort")

        backward = pd.merge_asof(left, lookup, on="timestamp", by=PARTITION_KEYS, direction="backward")
        forward = pd.merge_asof(left, lookup, on="timestamp", by=PARTITION_KEYS, direction="forward")
        backward = backward.set_index("_row")
        forward = forward.set_index("_row")

        chosen = backward[METADATA_COLUMNS].astype(object)
        use_next = backward["_matched"].isna()
        chosen.loc[use_next] = forward.loc[use_next, METADATA_COLUMNS].astype(object)

        result.loc[chosen.index, METADATA_COLUMNS] = chosen
        return result

    def attach_cluster_metadata(
        self,
        events: pd.DataFrame,
        cluster_spec: Optional[pd.DataFrame],
        cluster_snapshot: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Attach cluster name, tags and node types to every event.

        Args:
            events: Timeline events
            cluster_spec: Live spec records (org_id, cluster_id, timestamp, metadata)
            cluster_snapshot: Point-in-time snapshots (terminated_time / start_time)

        Returns:
            Events with METADATA_COLUMNS added
        """
        from_spec = self._lookup_when(events, cluster_spec)

        snapshot = None
        if cluster_snapshot is not None and not cluster_snapshot.empty:
            snapshot = cluster_snapshot.copy()
            terminated = snapshot["terminated_time"] if "terminated_time" in snapshot.columns else np.nan
            started = snapshot["start_time"] if "start_time" in snapshot.columns else np.nan
            snapshot["timestamp"] = pd.Series(terminated, index=snapshot.index).fillna(
                pd.Series(started, index=snapshot.index)
            )
        from_snapshot = self._lookup_when(events, snapshot)

        metadata = from_spec.combine_first(from_snapshot)[METADATA_COLUMNS]
        missing = int(metadata["node_type_id"].isna().sum())
        if missing:
            self.logger.warning("Events without cluster spec", events=missing)

        return pd.concat([events.drop(columns=METADATA_COLUMNS, errors="ignore"), metadata], axis=1)

    def _prepare_catalog(self, price_catalog: pd.DataFrame, window: TimeWindow) -> pd.DataFrame:
        catalog = price_catalog.copy()
        for col in NODE_SPEC_COLUMNS:
            if col not in catalog.columns:
                catalog[col] = np.nan
        catalog["_node_key"] = normalize_node_type_series(catalog["node_type_key"])
        catalog["active_from_ms"] = catalog["active_from"].map(to_epoch_ms).astype(np.int64)
        open_ended = catalog["active_until"].isna()
        until_ms = window.until_ms if window.until_ms is not None else np.iinfo(np.int64).max
        closed_until = [until_ms if is_open else to_epoch_ms(value)
                        for is_open, value in zip(open_ended, catalog["active_until"])]
        catalog["active_until_ms"] = np.array(closed_until, dtype=np.int64)
        return catalog.dropna(subset=["_node_key"]).sort_values("active_from_ms", kind="mergesort")

    def _join_node_specs(
        self, slices: pd.DataFrame, catalog: pd.DataFrame, type_column: str, prefix: str
    ) -> pd.DataFrame:
        """Effective-dated join of one node role (driver or worker) by slice start."""
        spec_cols = [f"{prefix}_{suffix}" for suffix in NODE_SPEC_COLUMNS.values()]
        result = pd.DataFrame(np.nan, index=slices.index, columns=spec_cols, dtype=float)

        by = ["_node_key"]
        if "org_id" in catalog.columns:
            by = ["org_id"] + by

        left = slices[["start_ms"] + (["org_id"] if "org_id" in by else [])].copy()
        left["_node_key"] = normalize_node_type_series(slices[type_column])
        left["_row"] = slices.index
        left = left.dropna(subset=["_node_key"])
        if left.empty or catalog.empty:
            return result
        left["start_ms"] = left["start_ms"].astype(np.int64)
        left = left.sort_values("start_ms", kind="mergesort")

        right = catalog[by + ["active_from_ms", "active_until_ms"] + list(NODE_SPEC_COLUMNS)]
        matched = pd.merge_asof(
            left,
            right,
            left_on="start_ms",
            right_on="active_from_ms",
            by=by,
            direction="backward",
        ).set_index("_row")

        in_range = matched["start_ms"] < matched["active_until_ms"]
        matched = matched[in_range.fillna(False)]
        renamed = matched[list(NODE_SPEC_COLUMNS)].rename(
            columns={col: f"{prefix}_{suffix}" for col, suffix in NODE_SPEC_COLUMNS.items()}
        )
        result.loc[renamed.index, spec_cols] = renamed.astype(float)
        return result

    def build_intervals(
        self,
        denoised_before: Optional[pd.DataFrame],
        denoised_in_window: pd.DataFrame,
        price_catalog: pd.DataFrame,
        cluster_spec: Optional[pd.DataFrame],
        window: TimeWindow,
        cluster_snapshot: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Build the priced state slices for the window.

        Args:
            denoised_before: Reconstructed events before the window (seed source)
            denoised_in_window: Reconstructed events inside the window
            price_catalog: Validated type-2 node price catalog
            cluster_spec: Live cluster spec records
            window: Processing window
            cluster_snapshot: Optional point-in-time cluster snapshots

        Returns:
            State slice fact rows (SLICE_COLUMNS)
        """
        with PerformanceTimer("Build cluster state intervals", self.logger):
            seed = self.select_prior_states(denoised_before)
            current = (
                denoised_in_window[EVENT_COLUMNS]
                if denoised_in_window is not None and not denoised_in_window.empty
                else pd.DataFrame(columns=EVENT_COLUMNS)
            )

            frames = [f for f in (seed.assign(_src=0), current.assign(_src=1)) if not f.empty]
            if not frames:
                self.logger.warning("No cluster events in scope, no state slices built")
                return pd.DataFrame(columns=SLICE_COLUMNS)

            events = pd.concat(frames, ignore_index=True)
            events["timestamp"] = events["timestamp"].astype(np.int64)
            events["is_running"] = events["is_running"].astype(bool)
            events = events.sort_values(
                PARTITION_KEYS + ["timestamp", "_src", "event_order"], kind="mergesort"
            )
            # one state per instant: the last event in timeline order wins the tie
            events = events.drop_duplicates(subset=PARTITION_KEYS + ["timestamp"], keep="last")
            events = events.reset_index(drop=True)

            events = self.attach_cluster_metadata(events, cluster_spec, cluster_snapshot)
            slices = self._slice_timeline(events, window)
            if slices.empty:
                self.logger.warning("No closed state slices in window")
                return pd.DataFrame(columns=SLICE_COLUMNS)

            slices = self._price_slices(slices, price_catalog, window)

            self.logger.info(
                "✓ Built cluster state slices",
                events=len(events),
                slices=len(slices),
                clusters=slices.groupby(PARTITION_KEYS).ngroups,
                total_cost=round(float(slices["total_cost"].sum()), 6),
            )
            return slices[SLICE_COLUMNS]

    def _slice_timeline(self, events: pd.DataFrame, window: TimeWindow) -> pd.DataFrame:
        """Turn the sorted timeline into slices with uptime accumulators."""
        df = events.copy()
        grouped = df.groupby(PARTITION_KEYS, sort=False)

        df["current_node_count"] = grouped["current_node_count"].ffill()
        df["target_node_count"] = grouped["target_node_count"].ffill()

        previous_type = grouped["event_type"].shift(1)
        df["counter_reset"] = (previous_type.isin(RESET_TYPES) | ~df["is_running"]).astype(int)
        df["reset_partition"] = df.groupby(PARTITION_KEYS, sort=False)["counter_reset"].cumsum()

        df["start_ms"] = df["timestamp"]
        df["end_ms"] = grouped["timestamp"].shift(-1) - 1

        is_open = df["end_ms"].isna()
        close_terminating = is_open & (df["event_type"] == TERMINATING) & (window.until_ms is not None)
        if close_terminating.any():
            df.loc[close_terminating, "end_ms"] = window.until_ms - 1
        df = df[df["end_ms"].notna()].copy()
        if df.empty:
            return df
        df["end_ms"] = df["end_ms"].astype(np.int64)

        df["state_type"] = df["event_type"]
        df["uptime_seconds"] = (df["end_ms"] - df["start_ms"]) / MS_PER_SECOND
        accumulated = df.groupby(PARTITION_KEYS + ["reset_partition"], sort=False)["uptime_seconds"].cumsum()
        df["uptime_since_last_reset_seconds"] = accumulated.where(df["counter_reset"] == 0, 0.0)
        df["uptime_in_state_h"] = convert_seconds_to_hours(df["uptime_seconds"])

        df["cloud_billable"] = df["is_running"]
        df["databricks_billable"] = df["is_running"] & ~df["state_type"].isin(NON_BILLABLE_TYPES)
        df["is_automated"] = df["cluster_name"].map(
            lambda name: isinstance(name, str) and self.automated_pattern.search(name) is not None
        ).astype(bool)

        df["timestamp_state_start"] = ms_series_to_timestamp(df["start_ms"])
        df["timestamp_state_end"] = ms_series_to_timestamp(df["end_ms"])
        df["state_date"] = df["timestamp_state_start"].dt.date
        df["days_in_state"] = (
            df["timestamp_state_end"].dt.normalize() - df["timestamp_state_start"].dt.normalize()
        ).dt.days + 1

        return df.reset_index(drop=True)

    def _price_slices(self, slices: pd.DataFrame, price_catalog: pd.DataFrame, window: TimeWindow) -> pd.DataFrame:
        """Join node specs and compute potential and cost columns."""
        df = slices
        if price_catalog is None or price_catalog.empty:
            catalog = pd.DataFrame(columns=["_node_key", "active_from_ms", "active_until_ms"] + list(NODE_SPEC_COLUMNS))
        else:
            catalog = self._prepare_catalog(price_catalog, window)

        driver_specs = self._join_node_specs(df, catalog, "driver_node_type_id", "driver")
        worker_specs = self._join_node_specs(df, catalog, "node_type_id", "worker")
        df = pd.concat([df, driver_specs, worker_specs], axis=1)

        unpriced = df["driver_compute_price"].isna() | df["worker_compute_price"].isna()
        if unpriced.any():
            self.logger.warning(
                "State slices without node spec match, costs left null",
                slices=int(unpriced.sum()),
                node_types=sorted(
                    set(df.loc[unpriced, "node_type_id"].dropna().astype(str))
                    | set(df.loc[unpriced, "driver_node_type_id"].dropna().astype(str))
                ),
            )

        uptime_h = df["uptime_in_state_h"]
        current_nodes = df["current_node_count"]
        target_nodes = df["target_node_count"]

        worker_potential_core_s = _billable_cost(
            df["databricks_billable"], df["worker_vcpus"] * current_nodes * df["uptime_seconds"]
        )
        df["worker_potential_core_h"] = convert_seconds_to_hours(worker_potential_core_s)
        df["core_hours"] = _billable_cost(
            df["is_running"], (df["driver_vcpus"] + df["worker_vcpus"] * current_nodes.fillna(0)) * uptime_h
        )

        df["dbu_rate"] = df["worker_automated_dbu_price"].where(
            df["is_automated"], df["worker_interactive_dbu_price"]
        )

        df["driver_compute_cost"] = _billable_cost(df["cloud_billable"], df["driver_compute_price"] * uptime_h)
        df["worker_compute_cost"] = _billable_cost(
            df["cloud_billable"], df["worker_compute_price"] * target_nodes * uptime_h
        )
        df["driver_dbu_cost"] = _billable_cost(
            df["databricks_billable"], df["driver_hourly_dbus"] * df["dbu_rate"] * uptime_h
        )
        df["worker_dbu_cost"] = _billable_cost(
            df["databricks_billable"], df["worker_hourly_dbus"] * df["dbu_rate"] * current_nodes * uptime_h
        )
        df["total_compute_cost"] = df["driver_compute_cost"] + df["worker_compute_cost"]
        df["total_dbu_cost"] = df["driver_dbu_cost"] + df["worker_dbu_cost"]
        df["total_driver_cost"] = df["driver_compute_cost"] + df["driver_dbu_cost"]
        df["total_worker_cost"] = df["worker_compute_cost"] + df["worker_dbu_cost"]
        df["total_cost"] = df["total_driver_cost"] + df["total_worker_cost"]

        return df
