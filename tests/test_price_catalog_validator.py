"""
Unit tests for Price Catalog Validator

Tests gap/overlap/duplicate detection on the type-2 node price catalog.
"""

from datetime import date

import pandas as pd
import pytest

from clustercost.exceptions import ConfigurationError
from clustercost.price_catalog_validator import REPORT_COLUMNS, PriceCatalogValidator

AS_OF = date(2024, 1, 2)


def catalog(rows):
    return pd.DataFrame(rows, columns=["node_type_key", "active_from", "active_until"])


@pytest.fixture
def validator():
    return PriceCatalogValidator({})


class TestPriceCatalogValidator:
    """Test suite for PriceCatalogValidator."""

    def test_contiguous_chain_is_valid(self, validator):
        """Contiguous records with one open-ended current price pass."""
        result = validator.validate(
            catalog([
                ("m5.xlarge", date(2023, 1, 1), date(2023, 6, 1)),
                ("m5.xlarge", date(2023, 6, 1), None),
                ("r5.xlarge", date(2023, 1, 1), None),
            ]),
            AS_OF,
        )

        assert result.is_valid
        assert result.bad_keys == []
        assert result.report.empty

    def test_gap_is_reported_with_day_count(self, validator):
        """A gap between records fails and names the key."""
        result = validator.validate(
            catalog([
                ("m5.xlarge", date(2023, 1, 1), date(2023, 6, 1)),
                ("m5.xlarge", date(2023, 6, 5), None),
                ("r5.xlarge", date(2023, 1, 1), None),
            ]),
            AS_OF,
        )

        assert not result.is_valid
        assert result.bad_keys == ["m5.xlarge"]
        assert result.bad_record_count == 1
        assert result.report["days_between_current_and_previous"].iloc[0] == 4
        assert list(result.report.columns) == REPORT_COLUMNS

    def test_overlap_is_reported(self, validator):
        """A record starting before the previous one ends fails."""
        result = validator.validate(
            catalog([
                ("m5.xlarge", date(2023, 1, 1), date(2023, 7, 1)),
                ("m5.xlarge", date(2023, 6, 1), None),
            ]),
            AS_OF,
        )

        assert not result.is_valid
        assert result.bad_keys == ["m5.xlarge"]
        assert result.report["days_between_current_and_previous"].iloc[0] == -30

    def test_duplicate_period_is_reported(self, validator):
        """Two records for the same key and period both fail."""
        result = validator.validate(
            catalog([
                ("m5.xlarge", date(2023, 1, 1), date(2023, 6, 1)),
                ("m5.xlarge", date(2023, 1, 1), date(2023, 6, 1)),
                ("m5.xlarge", date(2023, 6, 1), None),
            ]),
            AS_OF,
        )

        assert not result.is_valid
        assert result.bad_record_count == 2
        assert set(result.report["rn"]) == {1, 2}

    def test_multiple_open_ended_records_fail(self, validator):
        """Only one record per key may carry a null active_until."""
        result = validator.validate(
            catalog([
                ("m5.xlarge", date(2023, 1, 1), None),
                ("m5.xlarge", AS_OF, None),
            ]),
            AS_OF,
        )

        assert not result.is_valid
        assert result.bad_record_count == 2

    def test_keys_are_normalized_before_chaining(self, validator):
        """Case and surrounding whitespace do not split a key's chain."""
        result = validator.validate(
            catalog([
                (" M5.XLarge", date(2023, 1, 1), date(2023, 6, 1)),
                ("m5.xlarge ", date(2023, 6, 1), None),
            ]),
            AS_OF,
        )

        assert result.is_valid

    def test_empty_catalog_is_valid(self, validator):
        """An empty catalog has nothing to conflict."""
        assert validator.validate(catalog([]), AS_OF).is_valid

    def test_missing_columns_raise(self, validator):
        """Catalog without validity columns is a contract error."""
        with pytest.raises(ValueError, match="missing required columns"):
            validator.validate(pd.DataFrame({"node_type_key": ["a"]}), AS_OF)

    def test_validate_or_raise_carries_report(self, validator):
        """ConfigurationError exposes keys, count and the report rows."""
        bad = catalog([
            ("m5.xlarge", date(2023, 1, 1), date(2023, 6, 1)),
            ("m5.xlarge", date(2023, 6, 5), None),
        ])

        with pytest.raises(ConfigurationError) as excinfo:
            validator.validate_or_raise(bad, AS_OF)

        error = excinfo.value
        assert error.bad_keys == ["m5.xlarge"]
        assert error.bad_record_count == 1
        assert len(error.report) == 1
        assert "m5.xlarge" in str(error)
        assert "1 records" in str(error)

    def test_validate_or_raise_passes_valid_catalog(self, validator, price_catalog):
        """A valid catalog does not raise."""
        validator.validate_or_raise(price_catalog, AS_OF)
