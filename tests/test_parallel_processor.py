"""
Unit tests for parallel partition processing.
"""

import pandas as pd
import pytest

from clustercost.parallel_processor import ParallelPartitionProcessor, get_optimal_workers, split_partitions


def count_rows(chunk: pd.DataFrame) -> pd.DataFrame:
    return chunk.groupby(["org_id", "cluster_id"], as_index=False).size()


@pytest.fixture
def partitioned():
    """Three clusters with 3, 2 and 1 events, interleaved."""
    return pd.DataFrame({
        "org_id": ["org-1"] * 6,
        "cluster_id": ["a", "b", "c", "a", "b", "a"],
        "timestamp": range(6),
    })


class TestSplitPartitions:
    """Test suite for split_partitions."""

    def test_partitions_never_split(self, partitioned):
        """Every cluster's rows land in exactly one chunk."""
        chunks = list(split_partitions(partitioned, ["org_id", "cluster_id"], 2))

        assert len(chunks) == 2
        seen = [set(chunk["cluster_id"]) for chunk in chunks]
        assert seen == [{"a", "b"}, {"c"}]
        assert sum(len(chunk) for chunk in chunks) == len(partitioned)

    def test_empty_frame_yields_nothing(self):
        assert list(split_partitions(pd.DataFrame(columns=["org_id", "cluster_id"]), ["org_id", "cluster_id"], 2)) == []


class TestParallelPartitionProcessor:
    """Test suite for ParallelPartitionProcessor."""

    def test_map_partitions_with_threads(self, partitioned):
        processor = ParallelPartitionProcessor(max_workers=2, use_threads=True)

        result = processor.map_partitions(partitioned, ["org_id", "cluster_id"], count_rows, partitions_per_chunk=1)

        assert list(result["cluster_id"]) == ["a", "b", "c"]
        assert list(result["size"]) == [3, 2, 1]

    def test_chunk_failure_propagates(self, partitioned):
        def fail(chunk):
            raise RuntimeError("bad chunk")

        processor = ParallelPartitionProcessor(max_workers=2, use_threads=True)

        with pytest.raises(RuntimeError, match="bad chunk"):
            processor.map_partitions(partitioned, ["org_id", "cluster_id"], fail)

    def test_optimal_workers_bounded_by_chunks(self):
        assert get_optimal_workers(1, max_workers=8) == 1
        assert get_optimal_workers(0) == 1
