"""
Cluster Cost Attribution

Prices the lifecycle of compute clusters slice by slice and attributes those
costs to the job runs that used them.

Usage:
    from clustercost import ClusterCostPipeline, PipelineInputs, TimeWindow

    pipeline = ClusterCostPipeline(config)
    result = pipeline.run(
        PipelineInputs(events=events, price_catalog=catalog, job_runs=runs),
        TimeWindow.from_values("2024-01-01", "2024-01-02"),
    )
    result.cluster_state_fact
    result.job_run_cost_fact
"""

from .cluster_state_builder import ClusterStateIntervalBuilder
from .event_state_reconstructor import EventStateReconstructor
from .exceptions import ConfigurationError
from .job_run_cost_allocator import JobRunCostAllocator
from .pipeline import ClusterCostPipeline, PipelineInputs, PipelineResult
from .price_catalog_validator import PriceCatalogValidator
from .utilization_joiner import UtilizationJoiner
from .utils import TimeWindow

__all__ = [
    'ClusterCostPipeline',
    'PipelineInputs',
    'PipelineResult',
    'PriceCatalogValidator',
    'EventStateReconstructor',
    'ClusterStateIntervalBuilder',
    'JobRunCostAllocator',
    'UtilizationJoiner',
    'ConfigurationError',
    'TimeWindow',
]

__version__ = '1.0.0'
