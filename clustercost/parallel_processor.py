"""
Parallel partition processing.

Cluster timelines are independent of each other, so the per-cluster
transforms can be fanned out over worker processes. Partitions are never
split across chunks: every row of one (org_id, cluster_id) lands in the
same chunk so window-style lookbacks see the full timeline.
"""

import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from typing import Callable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from .utils import get_logger


def split_partitions(
    df: pd.DataFrame, partition_keys: Sequence[str], partitions_per_chunk: int
) -> Iterator[pd.DataFrame]:
    """
    Yield chunks of whole partitions.

    Args:
        df: Partitioned DataFrame
        partition_keys: Columns identifying a partition
        partitions_per_chunk: Maximum number of partitions per chunk

    Yields:
        DataFrame chunks, each holding complete partitions
    """
    if df.empty:
        return

    partition_ids = df.groupby(list(partition_keys), sort=True, dropna=False).ngroup()
    chunk_ids = partition_ids // max(1, partitions_per_chunk)

    for chunk_id in np.unique(chunk_ids.to_numpy()):
        yield df[chunk_ids.to_numpy() == chunk_id]


def get_optimal_workers(total_chunks: int, max_workers: Optional[int] = None) -> int:
    """
    Calculate optimal number of workers based on available chunks.

    Args:
        total_chunks: Total number of chunks to process
        max_workers: Maximum workers allowed (defaults to CPU count)

    Returns:
        Optimal number of workers (won't exceed total_chunks or CPU count)
    """
    cpu_count = mp.cpu_count()
    max_allowed = max_workers or cpu_count

    optimal = min(total_chunks, max_allowed, cpu_count)

    return max(1, optimal)


class ParallelPartitionProcessor:
    """Process partition chunks in parallel using multiprocessing or threading."""

    def __init__(self, max_workers: Optional[int] = None, use_threads: bool = False):
        """
        Initialize parallel partition processor.

        Args:
            max_workers: Maximum number of worker processes/threads
                        (defaults to CPU count)
            use_threads: If True, use ThreadPoolExecutor instead of ProcessPoolExecutor
        """
        self.max_workers = max_workers or mp.cpu_count()
        self.use_threads = use_threads
        self.logger = get_logger("parallel_processor")

        executor_type = "threads" if use_threads else "processes"
        self.logger.info(
            "Initialized parallel processor",
            max_workers=self.max_workers,
            executor_type=executor_type
        )

    def process_chunks_parallel(
        self,
        chunks: Iterator[pd.DataFrame],
        process_func: Callable[..., pd.DataFrame],
        process_args: tuple = (),
        ordered: bool = True
    ) -> List[pd.DataFrame]:
        """
        Process chunks in parallel.

        Args:
            chunks: Iterator of DataFrame chunks
            process_func: Module-level function applied to each chunk
            process_args: Additional arguments to pass to process_func
            ordered: If True, return results in original chunk order

        Returns:
            List of processed DataFrames
        """
        chunk_list = list(chunks)
        if not chunk_list:
            return []

        workers = get_optimal_workers(len(chunk_list), self.max_workers)
        self.logger.info("Starting parallel chunk processing", chunks=len(chunk_list), workers=workers)

        ExecutorClass = ThreadPoolExecutor if self.use_threads else ProcessPoolExecutor

        indexed_results = []
        with ExecutorClass(max_workers=workers) as executor:
            future_to_idx = {
                executor.submit(process_func, chunk, *process_args): idx
                for idx, chunk in enumerate(chunk_list)
            }

            for future in as_completed(future_to_idx):
                idx = future_to_idx[future]
                try:
                    indexed_results.append((idx, future.result()))
                    self.logger.debug(f"✓ Completed chunk {idx+1}")
                except Exception as e:
                    self.logger.error(f"✗ Chunk {idx+1} failed: {e}")
                    raise

        if ordered:
            indexed_results.sort(key=lambda x: x[0])

        self.logger.info(
            "✓ Parallel processing complete",
            total_chunks=len(chunk_list),
            total_results=len(indexed_results)
        )

        return [result for _, result in indexed_results]

    def map_partitions(
        self,
        df: pd.DataFrame,
        partition_keys: Sequence[str],
        process_func: Callable[..., pd.DataFrame],
        process_args: tuple = (),
        partitions_per_chunk: int = 500,
    ) -> pd.DataFrame:
        """Split df into whole-partition chunks, process them and concatenate."""
        results = self.process_chunks_parallel(
            split_partitions(df, partition_keys, partitions_per_chunk),
            process_func,
            process_args,
            ordered=True,
        )
        if not results:
            return process_func(df, *process_args)
        return pd.concat(results, ignore_index=True)
