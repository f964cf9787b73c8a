"""
Event State Reconstructor

Turns the raw cluster lifecycle event stream into a denoised timeline where
every event knows whether the cluster was running and how many nodes it had.

The only directly observable on/off signal is the event type itself:
    TERMINATING          -> off
    CREATING / STARTING  -> on
    everything else      -> unknown

Everything else is propagated, per (org_id, cluster_id), in this order:
    1. imputed termination (always off)
    2. the event's own switch
    3. last known switch before the event          (lookback, bounded)
    4. opposite of the next known switch            (lookahead, bounded)
    5. anchor event types that imply a running cluster
    6. forward fill of the resolved flag, then negated backward fill
    7. pessimistic default: not running

Missing terminations (two "on" switches in a row) are repaired by inserting a
synthetic TERMINATING event 1ms after the event preceding the second switch.

Ordering within a partition is by timestamp; same-timestamp events sort
TERMINATING last so a termination wins the tie.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

from .parallel_processor import ParallelPartitionProcessor
from .utils import PerformanceTimer, TimeWindow, get_logger

PARTITION_KEYS = ["org_id", "cluster_id"]

TERMINATING = "TERMINATING"
CREATING = "CREATING"
STARTING = "STARTING"

SWITCH_ON_TYPES = [CREATING, STARTING]

# EXPANDED_DISK, NODES_LOST etc. are left out: they can arrive after the
# cluster was terminated.
ANCHOR_RUNNING_TYPES = [
    STARTING,
    "INIT_SCRIPTS_STARTED",
    "RUNNING",
    CREATING,
    "RESIZING",
    "UPSIZE_COMPLETED",
    "DRIVER_HEALTHY",
]

REQUIRED_COLUMNS = PARTITION_KEYS + ["timestamp", "event_type"]

NODE_COUNT_COLUMNS = [
    "current_node_count",
    "target_node_count",
    "cluster_size_hint",
    "autoscale_min_workers",
]

OUTPUT_COLUMNS = (
    REQUIRED_COLUMNS
    + NODE_COUNT_COLUMNS
    + [
        "rnk",
        "rn",
        "running_switch",
        "previous_switch",
        "imputed_termination_event",
        "is_running",
        "event_order",
    ]
)

DEFAULT_LOOKAROUND_ROWS = 1000


def _group(series: pd.Series, keys: pd.DataFrame):
    return series.groupby([keys[k] for k in PARTITION_KEYS], sort=False)


def _fill(values: pd.Series, fallback: pd.Series) -> pd.Series:
    return values.where(values.notna(), fallback)


def _last_before(series: pd.Series, keys: pd.DataFrame, rows: Optional[int]) -> pd.Series:
    """Last non-null value among the previous ``rows`` rows of the partition."""
    shifted = _group(series, keys).shift(1)
    limit = None if rows is None else max(rows - 1, 0)
    if limit == 0:
        return shifted
    return _group(shifted, keys).ffill(limit=limit)


def _first_after(series: pd.Series, keys: pd.DataFrame, rows: Optional[int]) -> pd.Series:
    """First non-null value among the next ``rows`` rows of the partition."""
    shifted = _group(series, keys).shift(-1)
    limit = None if rows is None else max(rows - 1, 0)
    if limit == 0:
        return shifted
    return _group(shifted, keys).bfill(limit=limit)


def sort_events(df: pd.DataFrame) -> pd.DataFrame:
    """Total order within each partition: timestamp, TERMINATING last, then type and counts."""
    df = df.assign(_terminating_last=(df["event_type"] == TERMINATING).astype(int))
    df = df.sort_values(
        PARTITION_KEYS + ["timestamp", "_terminating_last", "event_type"] + NODE_COUNT_COLUMNS,
        kind="mergesort",
        na_position="last",
    )
    return df.drop(columns="_terminating_last").reset_index(drop=True)


def running_switch(event_type: pd.Series) -> pd.Series:
    """Directly observable on/off signal; null when the type says nothing."""
    switch = pd.Series(pd.NA, index=event_type.index, dtype="boolean")
    switch[event_type == TERMINATING] = False
    switch[event_type.isin(SWITCH_ON_TYPES)] = True
    return switch


def impute_missing_terminations(df: pd.DataFrame) -> pd.DataFrame:
    """
    Insert a synthetic TERMINATING row wherever two equal switches follow each other.

    The flag is raised on the row *before* the second switch; that row is
    duplicated into a TERMINATING event at its timestamp + 1ms (never past the
    next event's timestamp). Produces 0 or 1 extra rows per input row.

    Args:
        df: Sorted events with running_switch and previous_switch

    Returns:
        Events with the synthetic rows in place and imputed_termination_event set
    """
    keys = df[PARTITION_KEYS]
    next_switch = _group(df["running_switch"], keys).shift(-1)
    next_previous = _group(df["previous_switch"], keys).shift(-1)
    next_timestamp = _group(df["timestamp"], keys).shift(-1)

    invalid_chain = (next_switch.notna() & (next_switch == next_previous)).fillna(False).astype(bool)

    df = df.assign(
        imputed_termination_event=False,
        _seq=np.arange(len(df), dtype=np.int64) * 2,
    )
    if not invalid_chain.any():
        return df

    imputed = df[invalid_chain].copy()
    imputed["imputed_termination_event"] = True
    imputed["event_type"] = TERMINATING
    imputed["timestamp"] = np.minimum(
        imputed["timestamp"] + 1, next_timestamp[invalid_chain].astype(np.int64)
    )
    imputed["running_switch"] = pd.array([False] * len(imputed), dtype="boolean")
    imputed["_seq"] = imputed["_seq"] + 1

    return pd.concat([df, imputed]).sort_values("_seq", kind="mergesort").reset_index(drop=True)


def reconstruct_partitions(events: pd.DataFrame, lookaround_rows: int = DEFAULT_LOOKAROUND_ROWS) -> pd.DataFrame:
    """
    Denoise the running state of every partition in ``events``.

    Pure function of its input: events are deduplicated and sorted internally.

    Args:
        events: Lifecycle events, already restricted to the time window
        lookaround_rows: Bound of the lookback/lookahead neighbourhoods

    Returns:
        Reconstructed events (OUTPUT_COLUMNS), ordered by partition and event_order
    """
    if events.empty:
        return pd.DataFrame(columns=OUTPUT_COLUMNS)

    df = events.copy()
    for col in NODE_COUNT_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
        df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)
    df["timestamp"] = df["timestamp"].astype(np.int64)

    df = sort_events(df[REQUIRED_COLUMNS + NODE_COUNT_COLUMNS])
    df = df.drop_duplicates(subset=REQUIRED_COLUMNS, keep="first").reset_index(drop=True)

    # distance from end of window
    keys = df[PARTITION_KEYS]
    df["rn"] = df.groupby(PARTITION_KEYS, sort=False).cumcount(ascending=False) + 1
    df["rnk"] = (
        df.groupby(PARTITION_KEYS, sort=False)["timestamp"].rank(method="min", ascending=False).astype(int)
    )

    df["running_switch"] = running_switch(df["event_type"])
    previous_switch = _last_before(df["running_switch"], keys, None)
    df["previous_switch"] = previous_switch.where(df["running_switch"].notna(), pd.NA).astype("boolean")

    df = impute_missing_terminations(df)
    keys = df[PARTITION_KEYS]

    switch = df["running_switch"].astype("boolean")
    last_running_switch = _last_before(switch, keys, lookaround_rows).astype("boolean")
    next_running_switch = _first_after(switch, keys, lookaround_rows).astype("boolean")

    is_running = switch.copy()
    is_running[df["imputed_termination_event"].to_numpy()] = False
    is_running = _fill(is_running, last_running_switch)
    is_running = _fill(is_running, ~next_running_switch)
    is_running[(is_running.isna() & df["event_type"].isin(ANCHOR_RUNNING_TYPES)).to_numpy()] = True
    is_running = _fill(is_running, _last_before(is_running, keys, lookaround_rows).astype("boolean"))
    is_running = _fill(is_running, ~_first_after(is_running, keys, lookaround_rows).astype("boolean"))
    df["is_running"] = is_running.fillna(False).astype(bool)

    reported = (
        df["current_node_count"]
        .fillna(df["cluster_size_hint"])
        .fillna(df["autoscale_min_workers"])
    )
    last_known = _last_before(reported, keys, lookaround_rows)
    current = reported.fillna(last_known)

    size_at_create = df["cluster_size_hint"].fillna(df["autoscale_min_workers"])
    target = df["target_node_count"].fillna(current)
    target = target.where(df["event_type"] != CREATING, size_at_create)

    df["current_node_count"] = current.where(df["is_running"])
    df["target_node_count"] = target.where(df["is_running"])

    df["event_order"] = df.groupby(PARTITION_KEYS, sort=False).cumcount()

    return df[OUTPUT_COLUMNS]


class EventStateReconstructor:
    """
    Reconstruct running state and node counts from cluster lifecycle events.

    Each (org_id, cluster_id) partition is processed independently; with
    ``performance.parallel_partitions`` enabled partitions are spread over
    worker processes.
    """

    def __init__(self, config: Optional[Dict] = None, processor: Optional[ParallelPartitionProcessor] = None):
        """
        Initialize event state reconstructor.

        Args:
            config: Configuration dictionary
            processor: Optional parallel processor (created from config when parallel mode is on)
        """
        self.config = config or {}
        self.logger = get_logger("event_state_reconstructor")

        perf_config = self.config.get("performance", {})
        self.lookaround_rows = perf_config.get("lookaround_rows", DEFAULT_LOOKAROUND_ROWS)
        self.partitions_per_chunk = perf_config.get("partitions_per_chunk", 500)
        self.parallel = bool(perf_config.get("parallel_partitions", False))

        self.processor = processor
        if self.parallel and self.processor is None:
            self.processor = ParallelPartitionProcessor(max_workers=perf_config.get("max_workers"))

        self.logger.info(
            "Initialized event state reconstructor",
            lookaround_rows=self.lookaround_rows,
            parallel=self.parallel,
        )

    def reconstruct(self, events: pd.DataFrame, time_window: TimeWindow) -> pd.DataFrame:
        """
        Reconstruct the denoised event timeline for events inside ``time_window``.

        Args:
            events: Raw lifecycle events (org_id, cluster_id, timestamp, event_type, node counts)
            time_window: Half-open window; either side may be open

        Returns:
            Reconstructed events with is_running and imputed node counts
        """
        with PerformanceTimer("Reconstruct cluster event states", self.logger):
            missing_cols = [c for c in REQUIRED_COLUMNS if c not in events.columns]
            if missing_cols:
                raise ValueError(f"Events DataFrame missing required columns: {missing_cols}")

            in_window = events[time_window.mask(events["timestamp"])]
            if in_window.empty:
                self.logger.info(
                    "No cluster events in window",
                    from_ms=time_window.from_ms,
                    until_ms=time_window.until_ms,
                )
                return pd.DataFrame(columns=OUTPUT_COLUMNS)

            if self.parallel and self.processor is not None:
                result = self.processor.map_partitions(
                    in_window,
                    PARTITION_KEYS,
                    reconstruct_partitions,
                    (self.lookaround_rows,),
                    partitions_per_chunk=self.partitions_per_chunk,
                )
            else:
                result = reconstruct_partitions(in_window, self.lookaround_rows)

            imputed_count = int(result["imputed_termination_event"].sum())
            if imputed_count:
                self.logger.warning(
                    "Imputed missing termination events",
                    imputed_events=imputed_count,
                )

            self.logger.info(
                "✓ Reconstructed cluster event states",
                input_events=len(in_window),
                output_events=len(result),
                clusters=result.groupby(PARTITION_KEYS).ngroups,
                running_events=int(result["is_running"].sum()),
            )

            return result
