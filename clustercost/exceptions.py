"""Exceptions raised by the cluster cost pipeline."""

from typing import List, Optional

import pandas as pd


class ConfigurationError(Exception):
    """Reference data is invalid and the pipeline must not continue.

    Attributes:
        report: DataFrame with the offending catalog rows (may be empty)
        bad_keys: Sorted list of offending node type keys
        bad_record_count: Number of records found in conflict
    """

    def __init__(
        self,
        message: str,
        report: Optional[pd.DataFrame] = None,
        bad_keys: Optional[List[str]] = None,
        bad_record_count: int = 0,
    ):
        super().__init__(message)
        self.report = report if report is not None else pd.DataFrame()
        self.bad_keys = bad_keys or []
        self.bad_record_count = bad_record_count
