#!/usr/bin/env python3
"""Generate a synthetic cluster cost input set (parquet) for local runs and benchmarks."""

import argparse
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from clustercost.parquet_reader import DEFAULT_TABLES, write_parquet
from clustercost.utils import format_bytes, to_epoch_ms

NODE_TYPES = {
    # node_type_key: (vcpus, memory_gb, compute_contract_price, hourly_dbus)
    "m5.xlarge": (4, 16, 0.192, 0.69),
    "m5.2xlarge": (8, 32, 0.384, 1.37),
    "r5.2xlarge": (8, 64, 0.504, 1.8),
    "i3.xlarge": (4, 30.5, 0.312, 1.0),
}

INTERACTIVE_DBU_PRICE = 0.55
AUTOMATED_DBU_PRICE = 0.15

MS_PER_MINUTE = 60 * 1000


def generate_price_catalog(start: datetime) -> pd.DataFrame:
    """Two contiguous price periods per node type, the latest open-ended."""
    rows = []
    price_change = (start - timedelta(days=30)).date()
    for key, (vcpus, memory_gb, price, dbus) in NODE_TYPES.items():
        for active_from, active_until, factor in (
            ((start - timedelta(days=365)).date(), price_change, 1.1),
            (price_change, None, 1.0),
        ):
            rows.append({
                "node_type_key": key,
                "active_from": active_from,
                "active_until": active_until,
                "vcpus": vcpus,
                "memory_gb": memory_gb,
                "compute_contract_price": round(price * factor, 4),
                "hourly_dbus": dbus,
                "interactive_dbu_price": INTERACTIVE_DBU_PRICE,
                "automated_dbu_price": AUTOMATED_DBU_PRICE,
                "sql_compute_dbu_price": 0.22,
                "jobs_light_dbu_price": 0.07,
            })
    return pd.DataFrame(rows)


def generate_cluster_lifecycle(
    org_id: str, cluster_id: str, start_ms: int, duration_ms: int, workers: int, drop_termination: bool
) -> list:
    """One CREATING -> ... -> TERMINATING lifecycle, optionally missing its termination."""
    def event(offset_ms, event_type, current=None, target=None):
        return {
            "org_id": org_id,
            "cluster_id": cluster_id,
            "timestamp": start_ms + offset_ms,
            "event_type": event_type,
            "current_node_count": current,
            "target_node_count": target,
            "cluster_size_hint": workers if event_type == "CREATING" else None,
            "autoscale_min_workers": None,
        }

    events = [
        event(0, "CREATING"),
        event(2 * MS_PER_MINUTE, "INIT_SCRIPTS_STARTED"),
        event(4 * MS_PER_MINUTE, "RUNNING", workers, workers),
        event(4 * MS_PER_MINUTE + 5000, "DRIVER_HEALTHY"),
    ]
    if duration_ms > 30 * MS_PER_MINUTE and random.random() < 0.5:
        events.append(event(duration_ms // 2, "RESIZING", workers, workers * 2))
        events.append(event(duration_ms // 2 + MS_PER_MINUTE, "UPSIZE_COMPLETED", workers * 2, workers * 2))
    if not drop_termination:
        events.append(event(duration_ms, "TERMINATING"))
    return events


def generate_inputs(num_clusters: int, num_days: int, start: datetime, runs_per_cluster: int) -> dict:
    """Generate every input table.

    Args:
        num_clusters: Number of clusters (half automated, half interactive)
        num_days: Number of days to spread lifecycles across
        start: Start of the generated period (UTC)
        runs_per_cluster: Job runs per interactive cluster

    Returns:
        Mapping of logical table name to DataFrame
    """
    org_id = "org-1"
    period_start_ms = to_epoch_ms(start)
    node_keys = list(NODE_TYPES)

    events, specs, job_runs, spark_jobs, spark_tasks = [], [], [], [], []
    run_id = 1000
    context_id = 1

    for i in range(num_clusters):
        automated = i % 2 == 0
        job_id = 500 + i
        cluster_id = f"cluster-{i:05d}"
        cluster_name = f"job-{job_id}-run-1" if automated else f"analytics-{i}"
        lifecycle_start = period_start_ms + random.randrange(0, num_days * 24 * 60) * MS_PER_MINUTE
        duration_ms = random.randint(20, 8 * 60) * MS_PER_MINUTE
        workers = random.randint(1, 8)
        node_type = random.choice(node_keys)

        events.extend(
            generate_cluster_lifecycle(
                org_id, cluster_id, lifecycle_start, duration_ms, workers,
                drop_termination=not automated and random.random() < 0.05,
            )
        )
        specs.append({
            "org_id": org_id,
            "cluster_id": cluster_id,
            "timestamp": lifecycle_start - MS_PER_MINUTE,
            "cluster_name": cluster_name,
            "custom_tags": f'{{"team": "team-{i % 5}"}}',
            "driver_node_type_id": node_type,
            "node_type_id": node_type,
            "spark_version": "13.3.x-scala2.12",
        })

        run_windows = (
            [(lifecycle_start + 4 * MS_PER_MINUTE, lifecycle_start + duration_ms - MS_PER_MINUTE)]
            if automated
            else [
                (
                    lifecycle_start + random.randint(5, duration_ms // MS_PER_MINUTE - 10) * MS_PER_MINUTE,
                    None,
                )
                for _ in range(runs_per_cluster)
            ]
        )
        for n, (run_start, run_end) in enumerate(run_windows, start=1):
            if run_end is None:
                run_end = min(run_start + random.randint(2, 60) * MS_PER_MINUTE, lifecycle_start + duration_ms)
            job_runs.append({
                "org_id": org_id,
                "run_id": run_id,
                "job_id": job_id,
                "id_in_job": n,
                "cluster_id": cluster_id,
                "job_cluster_type": "new" if automated else "existing",
                "start_ms": run_start,
                "end_ms": run_end,
                "terminal_state": random.choice(["SUCCESS", "SUCCESS", "SUCCESS", "FAILED"]),
                "trigger_type": "PERIODIC" if automated else "ONE_TIME",
                "task_type": "NOTEBOOK" if not automated else "SPARK_JAR",
            })

            stage_ids = [context_id * 100 + s for s in range(3)]
            spark_jobs.append({
                "org_id": org_id,
                "spark_context_id": context_id,
                "job_group_id": f"{context_id}_job-{job_id}-run-{n}-action-1",
                "stage_ids": stage_ids,
            })
            for stage_id in stage_ids:
                for _ in range(workers):
                    spark_tasks.append({
                        "org_id": org_id,
                        "spark_context_id": context_id,
                        "stage_id": stage_id,
                        "runtime_ms": random.randint(1, 10) * MS_PER_MINUTE,
                    })

            run_id += 1
            context_id += 1

    return {
        "events": pd.DataFrame(events),
        "price_catalog": generate_price_catalog(start),
        "cluster_spec": pd.DataFrame(specs),
        "job_runs": pd.DataFrame(job_runs),
        "spark_jobs": pd.DataFrame(spark_jobs),
        "spark_tasks": pd.DataFrame(spark_tasks),
    }


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Generate synthetic cluster cost input data')
    parser.add_argument(
        '--clusters',
        type=int,
        default=100,
        help='Number of clusters to generate'
    )
    parser.add_argument(
        '--days',
        type=int,
        default=1,
        help='Number of days to spread cluster lifecycles across'
    )
    parser.add_argument(
        '--runs-per-cluster',
        type=int,
        default=3,
        help='Job runs per interactive cluster'
    )
    parser.add_argument(
        '--start',
        default='2024-01-01',
        help='Start date (UTC)'
    )
    parser.add_argument(
        '--seed',
        type=int,
        default=42,
        help='Random seed'
    )
    parser.add_argument(
        '--output',
        default='data/input',
        help='Output directory for parquet tables'
    )

    args = parser.parse_args()
    random.seed(args.seed)

    start = datetime.fromisoformat(args.start).replace(tzinfo=timezone.utc)

    print(f"Generating {args.clusters:,} clusters over {args.days} day(s)...")
    tables = generate_inputs(args.clusters, args.days, start, args.runs_per_cluster)

    output_dir = Path(args.output)
    for name, df in tables.items():
        path = write_parquet(df, output_dir / f"{DEFAULT_TABLES[name]}.parquet")
        print(f"✓ {name}: {len(df):,} rows -> {path} ({format_bytes(df.memory_usage(deep=True).sum())})")

    until = start + timedelta(days=args.days + 1)
    print("")
    print("Next steps:")
    print(f"  clustercost --input-path {output_dir} --from {start.isoformat()} --until {until.isoformat()} --no-db")

    return 0


if __name__ == '__main__':
    sys.exit(main())
