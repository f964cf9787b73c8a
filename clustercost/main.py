"""Main entry point for cluster cost attribution."""

import argparse
import json
import resource
import sys
import tracemalloc
from datetime import datetime
from pathlib import Path

from .config_loader import get_config, get_window
from .db_writer import DatabaseWriter
from .exceptions import ConfigurationError
from .parquet_reader import ParquetReader, write_parquet
from .pipeline import ClusterCostPipeline, PipelineInputs
from .utils import TimeWindow, format_duration, get_logger, setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def write_local_output(result, output_path: str, logger) -> None:
    """Write both fact tables as parquet under ``output_path``."""
    output_dir = Path(output_path)
    for name, df in (
        ("cluster_state_fact", result.cluster_state_fact),
        ("job_run_cost_potential_fact", result.job_run_cost_fact),
    ):
        df = df.copy()
        if "custom_tags" in df.columns:
            df["custom_tags"] = df["custom_tags"].map(
                lambda tags: None if tags is None or tags != tags else json.dumps(tags, default=str)
            )
        path = write_parquet(df, output_dir / f"{name}.parquet")
        logger.info(f"✓ Wrote {len(df)} rows to {path}")


def run_pipeline(args) -> int:
    """Run the cluster cost pipeline for one window.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 success, 1 failure, 2 invalid price catalog)
    """
    config = get_config(args.config)

    if args.from_time:
        config["pipeline"]["from_time"] = args.from_time
    if args.until_time:
        config["pipeline"]["until_time"] = args.until_time
    if args.input_path:
        config["input"]["base_path"] = args.input_path
    if args.output_path:
        config["output"]["local_path"] = args.output_path
    if args.no_db:
        config["output"]["write_to_db"] = False

    setup_logging(
        level=args.log_level or config.get("logging", {}).get("level", "INFO"),
        log_format=config.get("logging", {}).get("format", "console"),
    )

    logger = get_logger("main")

    logger.info("=" * 80)
    logger.info("Cluster Cost Attribution - Starting")
    logger.info("=" * 80)

    tracemalloc.start()
    pipeline_start = datetime.now()

    try:
        window: TimeWindow = get_window(config)
        write_to_db = _as_bool(config["output"].get("write_to_db", False))
        local_path = config["output"].get("local_path")

        logger.info(
            "Configuration",
            from_time=str(config["pipeline"]["from_time"]),
            until_time=str(config["pipeline"]["until_time"]),
            input_source=config["input"].get("source"),
            input_path=config["input"].get("base_path"),
            write_to_db=write_to_db,
            local_output=local_path or None,
        )

        logger.info("Phase 1: Reading input tables...")
        reader = ParquetReader(config)
        inputs = PipelineInputs.from_tables(reader.read_inputs())

        logger.info("Phase 2: Computing cost facts...")
        pipeline = ClusterCostPipeline(config)
        result = pipeline.run(inputs, window)

        logger.info("Phase 3: Writing results...")
        if local_path:
            write_local_output(result, local_path, logger)

        if write_to_db:
            with DatabaseWriter(config) as db_writer:
                db_writer.write_cluster_state_facts(result.cluster_state_fact)
                db_writer.write_job_run_cost_facts(result.job_run_cost_fact)

        total_duration = (datetime.now() - pipeline_start).total_seconds()

        logger.info("=" * 80)
        logger.info("CLUSTER COST ATTRIBUTION COMPLETED SUCCESSFULLY")
        logger.info("=" * 80)
        logger.info(f"Total duration: {format_duration(total_duration)}")
        logger.info(f"Input events: {len(inputs.events):,}")
        logger.info(f"State slices: {len(result.cluster_state_fact):,}")
        logger.info(f"Job run facts: {len(result.job_run_cost_fact):,}")

        _, peak_mem = tracemalloc.get_traced_memory()
        tracemalloc.stop()

        # macOS reports in bytes, Linux in KB
        max_rss_bytes = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        if sys.platform == "darwin":
            max_rss_mb = max_rss_bytes / (1024 * 1024)
        else:
            max_rss_mb = max_rss_bytes / 1024

        logger.info(
            "Memory usage",
            peak_python_mb=f"{peak_mem / (1024 * 1024):.2f} MB",
            peak_rss_mb=f"{max_rss_mb:.2f} MB",
        )
        logger.info("=" * 80)

        return EXIT_OK

    except ConfigurationError as e:
        logger.error("=" * 80)
        logger.error("PRICE CATALOG INVALID - no facts written")
        logger.error("=" * 80)
        logger.error(str(e), bad_keys=e.bad_keys, bad_records=e.bad_record_count)
        return EXIT_CONFIGURATION_ERROR

    except Exception as e:
        logger.error("Cluster cost attribution failed with error", error=str(e), exc_info=True)
        return EXIT_FAILURE


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Cluster cost attribution - price cluster state slices and allocate them to job runs"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: config/config.yaml)",
    )
    parser.add_argument(
        "--from",
        dest="from_time",
        type=str,
        default=None,
        help="Window start, inclusive (ISO timestamp, UTC); overrides pipeline.from_time",
    )
    parser.add_argument(
        "--until",
        dest="until_time",
        type=str,
        default=None,
        help="Window end, exclusive (ISO timestamp, UTC); overrides pipeline.until_time",
    )
    parser.add_argument(
        "--input-path",
        type=str,
        default=None,
        help="Input base path (local directory or S3 prefix)",
    )
    parser.add_argument(
        "--output-path",
        type=str,
        default=None,
        help="Write both fact tables as parquet to this directory",
    )
    parser.add_argument(
        "--no-db",
        action="store_true",
        help="Do not write facts to PostgreSQL",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override logging.level",
    )

    args = parser.parse_args()

    exit_code = run_pipeline(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
