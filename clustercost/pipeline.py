"""
Cluster Cost Pipeline

One batch run over a ``[from, until)`` window:

    validate catalog -> reconstruct events -> build state slices
        -> allocate to job runs -> join spark utilization

Any stage failure aborts the batch: partial cost facts are worse than none.
Re-running the same window over the same inputs yields the same facts.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import pandas as pd

from .cluster_state_builder import SLICE_COLUMNS, ClusterStateIntervalBuilder
from .event_state_reconstructor import OUTPUT_COLUMNS, EventStateReconstructor
from .job_run_cost_allocator import FACT_COLUMNS, JobRunCostAllocator
from .parallel_processor import ParallelPartitionProcessor
from .price_catalog_validator import PriceCatalogValidator
from .utils import PerformanceTimer, TimeWindow, get_logger, log_memory_usage, ms_to_datetime
from .utilization_joiner import UtilizationJoiner


@dataclass
class PipelineInputs:
    """Input tables for one window."""

    events: pd.DataFrame
    price_catalog: pd.DataFrame
    job_runs: pd.DataFrame
    cluster_spec: Optional[pd.DataFrame] = None
    cluster_snapshot: Optional[pd.DataFrame] = None
    spark_jobs: Optional[pd.DataFrame] = None
    spark_tasks: Optional[pd.DataFrame] = None

    @classmethod
    def from_tables(cls, tables: Dict[str, Optional[pd.DataFrame]]) -> "PipelineInputs":
        """Build from a ParquetReader.read_inputs() mapping."""
        return cls(
            events=tables["events"],
            price_catalog=tables["price_catalog"],
            job_runs=tables["job_runs"],
            cluster_spec=tables.get("cluster_spec"),
            cluster_snapshot=tables.get("cluster_snapshot"),
            spark_jobs=tables.get("spark_jobs"),
            spark_tasks=tables.get("spark_tasks"),
        )

    @property
    def has_telemetry(self) -> bool:
        return self.spark_jobs is not None and self.spark_tasks is not None


@dataclass
class PipelineResult:
    """Fact tables produced for one window."""

    cluster_state_fact: pd.DataFrame
    job_run_cost_fact: pd.DataFrame


class ClusterCostPipeline:
    """Run the cluster cost attribution stages in order."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize pipeline and its components.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self.logger = get_logger("pipeline")

        perf_config = self.config.get("performance", {})
        processor = None
        if perf_config.get("parallel_partitions", False):
            processor = ParallelPartitionProcessor(max_workers=perf_config.get("max_workers"))

        self.validator = PriceCatalogValidator(self.config)
        self.reconstructor = EventStateReconstructor(self.config, processor=processor)
        self.builder = ClusterStateIntervalBuilder(self.config)
        self.allocator = JobRunCostAllocator(self.config)
        self.joiner = UtilizationJoiner(self.config)

        self.logger.info("Initialized cluster cost pipeline")

    def run(self, inputs: PipelineInputs, window: TimeWindow) -> PipelineResult:
        """
        Produce the state slice and job run cost facts for ``window``.

        Args:
            inputs: Input tables
            window: Processing window (until is required)

        Returns:
            PipelineResult with cluster_state_fact and job_run_cost_fact

        Raises:
            ConfigurationError: Price catalog failed validation
        """
        if window.until_ms is None:
            raise ValueError("Pipeline window requires an until bound")

        with PerformanceTimer("Cluster cost pipeline", self.logger):
            self.logger.info("Step 1: Validating price catalog...")
            self.validator.validate_or_raise(inputs.price_catalog, window.until_date)

            self.logger.info("Step 2: Reconstructing cluster event states...")
            if window.from_ms is not None:
                before = self.reconstructor.reconstruct(inputs.events, window.before())
            else:
                before = pd.DataFrame(columns=OUTPUT_COLUMNS)
            in_window = self.reconstructor.reconstruct(inputs.events, window)
            log_memory_usage(self.logger, "after event reconstruction")

            self.logger.info("Step 3: Building cluster state slices...")
            slices = self.builder.build_intervals(
                before,
                in_window,
                inputs.price_catalog,
                inputs.cluster_spec,
                window,
                cluster_snapshot=inputs.cluster_snapshot,
            )
            if slices.empty:
                self.logger.warning("No cluster state slices for window, nothing to allocate")
                return PipelineResult(
                    cluster_state_fact=pd.DataFrame(columns=SLICE_COLUMNS),
                    job_run_cost_fact=pd.DataFrame(columns=FACT_COLUMNS),
                )

            self.logger.info("Step 4: Allocating costs to job runs...")
            facts = self.allocator.allocate(slices, inputs.job_runs)
            log_memory_usage(self.logger, "after job run allocation")

            self.logger.info("Step 5: Joining spark utilization...")
            task_runtime = None
            if inputs.has_telemetry:
                task_runtime = self.joiner.summarize_task_runtime(inputs.spark_jobs, inputs.spark_tasks)
            facts = self.joiner.enrich(facts, task_runtime)

            self.logger.info(
                "✓ Pipeline complete",
                window_from=_format_ms(window.from_ms),
                window_until=_format_ms(window.until_ms),
                state_slices=len(slices),
                job_runs=len(facts),
            )
            return PipelineResult(cluster_state_fact=slices, job_run_cost_fact=facts)


def _format_ms(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return ms_to_datetime(ms).isoformat()
