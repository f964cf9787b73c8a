"""
Price Catalog Validator

Validates the effective-dated (type-2) node price catalog before any cost is
computed from it. The catalog is edited directly by operators, so every run
re-checks it and aborts on the first sign of bad data.

Rules, per normalized node type key (lower + trim):
1. Records ordered by active_from form an unbroken chain:
   record N's active_until == record N+1's active_from
2. Only one record may be open-ended (null active_until = current price)
3. No two records share the same (key, active_from, active_until)

A null active_until is compared as the as-of date of the run.

Any violation fails the whole catalog (ConfigurationError).
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

import pandas as pd

from .exceptions import ConfigurationError
from .utils import PerformanceTimer, get_logger, normalize_node_type_series

REQUIRED_COLUMNS = ["node_type_key", "active_from", "active_until"]

REPORT_COLUMNS = [
    "node_type_key",
    "active_from",
    "active_until",
    "previous_until",
    "days_between_current_and_previous",
    "rnk",
    "rn",
]


@dataclass
class CatalogValidationResult:
    """Outcome of a catalog validation."""

    report: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=REPORT_COLUMNS))
    bad_keys: List[str] = field(default_factory=list)
    bad_record_count: int = 0

    @property
    def is_valid(self) -> bool:
        return self.bad_record_count == 0

    def error_message(self) -> str:
        return (
            "Price catalog invalid: each node type key must be unique for a given time period "
            "(active_from --> active_until) AND the previous record's active_until must equal the "
            "next record's active_from. Please correct the price catalog before continuing.\n"
            f"The node type keys with errors are: {', '.join(self.bad_keys)}. "
            f"A total of {self.bad_record_count} records were found in conflict."
        )


class PriceCatalogValidator:
    """Gap/overlap validation for the type-2 price catalog."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize price catalog validator.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self.logger = get_logger("price_catalog_validator")

    def validate(self, catalog: pd.DataFrame, as_of_date: date) -> CatalogValidationResult:
        """
        Check the catalog without raising.

        Args:
            catalog: Price catalog with node_type_key, active_from, active_until
            as_of_date: Date substituted for null active_until when comparing

        Returns:
            CatalogValidationResult (is_valid False when any record conflicts)
        """
        with PerformanceTimer("Validate price catalog", self.logger):
            missing_cols = [c for c in REQUIRED_COLUMNS if c not in catalog.columns]
            if missing_cols:
                raise ValueError(f"Price catalog missing required columns: {missing_cols}")

            if catalog.empty:
                self.logger.warning("Price catalog is empty, no costs can be derived")
                return CatalogValidationResult()

            df = catalog[REQUIRED_COLUMNS].copy()
            df["node_type_key"] = normalize_node_type_series(df["node_type_key"])
            df["active_from"] = pd.to_datetime(df["active_from"]).dt.normalize()
            df["is_open_ended"] = df["active_until"].isna()
            df["active_until"] = (
                pd.to_datetime(df["active_until"]).fillna(pd.Timestamp(as_of_date)).dt.normalize()
            )

            df = df.sort_values(["node_type_key", "active_from", "active_until"], kind="mergesort")
            df["previous_until"] = df.groupby("node_type_key")["active_until"].shift(1)

            # rank/row_number over (key, active_from, active_until) flag duplicates
            key_cols = ["node_type_key", "active_from", "active_until"]
            df["rnk"] = df.groupby(key_cols)["active_from"].rank(method="min").astype(int)
            df["rn"] = df.groupby(key_cols).cumcount() + 1
            duplicated = df.duplicated(subset=key_cols, keep=False)

            is_valid = df["previous_until"].isna() | (df["active_from"] == df["previous_until"])
            open_ended_count = df.groupby("node_type_key")["is_open_ended"].transform("sum")
            multiple_open = df["is_open_ended"] & (open_ended_count > 1)

            bad = df[~is_valid | duplicated | multiple_open].copy()

            if bad.empty:
                self.logger.info(
                    "✓ Price catalog valid",
                    records=len(df),
                    keys=df["node_type_key"].nunique(),
                )
                return CatalogValidationResult()

            bad["days_between_current_and_previous"] = (bad["active_from"] - bad["previous_until"]).dt.days
            report = bad[REPORT_COLUMNS].reset_index(drop=True)
            bad_keys = sorted(report["node_type_key"].dropna().unique().tolist())

            return CatalogValidationResult(
                report=report,
                bad_keys=bad_keys,
                bad_record_count=len(report),
            )

    def validate_or_raise(self, catalog: pd.DataFrame, as_of_date: date) -> None:
        """
        Validate the catalog and abort the run when it is not contiguous.

        Raises:
            ConfigurationError: With the offending keys, record count and report
        """
        result = self.validate(catalog, as_of_date)
        if result.is_valid:
            return

        self.logger.error(
            "Price catalog error report",
            bad_keys=result.bad_keys,
            bad_records=result.bad_record_count,
            report=result.report.to_dict(orient="records"),
        )
        raise ConfigurationError(
            result.error_message(),
            report=result.report,
            bad_keys=result.bad_keys,
            bad_record_count=result.bad_record_count,
        )
