"""
Tests for STATCUBE Lookup Validator

This module runs the validator against small in-memory cubes.
"""

import pytest
import pandas as pd

from statcube.core.database import DatabaseManager
from statcube.core.errors import UnmatchedValuesError
from statcube.core.models import (
    DimensionConfig,
    FactTableColumn,
    LookupTableExtractor,
    NumericExtractor,
    ReferenceDataExtractor,
    RevisionConfig,
)
from statcube.cube.resolver import FACT_TABLE, DimensionResolver
from statcube.cube.validator import LookupValidator
from statcube.reference.lookup_tables import lookup_table_schema
from statcube.reference.note_codes import NOTE_CODES_SCHEMA, NOTE_CODES_TABLE, note_codes_dataframe
from statcube.reference.reference_data import ReferenceDataCatalog

FACT_SCHEMA = {"Area": "VARCHAR", "Age": "VARCHAR", "Data": "VARCHAR", "Notes": "VARCHAR"}


def revision():
    return RevisionConfig(
        revision_id="rev1",
        dataset_id="ds1",
        fact_table_file="data.csv",
        fact_table_columns=[
            FactTableColumn(column_name="Area", column_index=0, column_type="dimension"),
            FactTableColumn(column_name="Age", column_index=1, column_type="dimension"),
            FactTableColumn(column_name="Data", column_index=2, column_type="data_values"),
            FactTableColumn(column_name="Notes", column_index=3, column_type="note_codes"),
        ],
        dimensions=[
            DimensionConfig(fact_table_column="Area", lookup_table_file="area.csv",
                            extractor=LookupTableExtractor(join_column="refcode", language_column="lang",
                                                           description_columns={"en-GB": "description",
                                                                                "cy-GB": "description"})),
            DimensionConfig(fact_table_column="Age", extractor=NumericExtractor()),
        ]
    )


def area_lookup(codes):
    records = []
    for code in codes:
        for lang in ("en-gb", "cy-gb"):
            records.append({"Area": code, "language": lang, "description": f"{code} {lang}", "sort_order": 1})
    return pd.DataFrame(records)


@pytest.fixture
def db(config):
    manager = DatabaseManager(":memory:", config=config)
    yield manager
    manager.close()


def load(db, fact, lookup_codes):
    db.load_dataframe(FACT_TABLE, pd.DataFrame(fact, columns=list(FACT_SCHEMA)), schema=FACT_SCHEMA)
    db.load_dataframe("area_lookup", area_lookup(lookup_codes), schema=lookup_table_schema("Area"))
    db.load_dataframe(NOTE_CODES_TABLE, note_codes_dataframe(), schema=NOTE_CODES_SCHEMA)
    return DimensionResolver().resolve(revision())


class TestLookupValidator:
    """Test cases for fact values against support tables."""

    def test_all_matched(self, db):
        """Test a clean cube with an unused lookup key."""
        contracts = load(db, [["W1", "10", "1", "p"], ["W2", "20", "2", None]], ["W1", "W2", "W"])
        report = LookupValidator(db).check_all(contracts)
        assert report.valid
        assert report.warnings == ["1 lookup keys for Area are not used by the fact table"]

    def test_unmatched_values(self, db):
        """Test unmatched codes are listed in order."""
        contracts = load(db, [["X2", "10", "1", None], ["W1", "10", "1", None], ["X1", "10", "1", None]], ["W1"])
        report = LookupValidator(db).check_all(contracts)
        assert len(report.errors) == 1
        error = report.errors[0]
        assert isinstance(error, UnmatchedValuesError)
        assert error.key == "errors.dimension_validation.unmatched_values"
        assert error.values == ["X1", "X2"]

    def test_validate_raises_first_error(self, db):
        """Test validate raises rather than collecting."""
        contracts = load(db, [["X1", "ten", "1", "q"]], ["W1"])
        with pytest.raises(UnmatchedValuesError) as exc:
            LookupValidator(db).validate(contracts)
        assert exc.value.column == "Area"

    def test_every_failure_collected(self, db):
        """Test numeric and note code failures are reported with lookup failures."""
        contracts = load(db, [["X1", "ten", "1", "p,q"]], ["W1"])
        report = LookupValidator(db).check_all(contracts)
        keys = [error.key for error in report.errors]
        assert keys == [
            "errors.dimension_validation.unmatched_values",
            "errors.dimension_validation.invalid_numeric",
            "errors.note_codes.unknown_codes",
        ]
        assert report.errors[2].values == ["q"]

    def test_reported_values_capped(self, db):
        """Test at most 500 values are carried, with the full count."""
        fact = [[f"X{i:04d}", "1", "1", None] for i in range(600)]
        contracts = load(db, fact, ["W1"])
        error = LookupValidator(db).check_all(contracts).errors[0]
        assert len(error.values) == 500
        assert error.total == 600


class TestReferenceDataValidation:
    """Test cases for reference data dimensions."""

    @pytest.fixture
    def catalog(self):
        return ReferenceDataCatalog({
            "reference_data": pd.DataFrame({
                "item_id": ["W1", "W2", "E1"],
                "version_no": ["1", "1", "1"],
                "sort_order": ["1", "2", "3"],
                "category_key": ["Wales", "Wales", "England"],
            }),
            "reference_data_info": pd.DataFrame({
                "item_id": ["W1", "W1", "W2", "W2", "E1", "E1"],
                "version_no": ["1"] * 6,
                "category_key": ["Wales", "Wales", "Wales", "Wales", "England", "England"],
                "lang": ["en-gb", "cy-gb"] * 3,
                "description": ["Cardiff", "Caerdydd", "Swansea", "Abertawe", "Bristol", "Bryste"],
            }),
        })

    def contracts(self, db, catalog, fact_values):
        rev = RevisionConfig(
            revision_id="rev1",
            dataset_id="ds1",
            fact_table_file="data.csv",
            fact_table_columns=[
                FactTableColumn(column_name="Area", column_index=0, column_type="dimension"),
                FactTableColumn(column_name="Data", column_index=1, column_type="data_values"),
            ],
            dimensions=[
                DimensionConfig(fact_table_column="Area", extractor=ReferenceDataExtractor(category_keys=["Wales"])),
            ]
        )
        db.load_dataframe(FACT_TABLE, pd.DataFrame({"Area": fact_values, "Data": ["1"] * len(fact_values)}))
        contracts = DimensionResolver().resolve(rev)
        catalog.load_into(db)
        catalog.build_lookup(db, "Area", contracts[0].support_table, ["Wales"])
        return contracts

    def test_items_in_category(self, db, catalog):
        contracts = self.contracts(db, catalog, ["W1", "W2"])
        assert LookupValidator(db).check_all(contracts).valid

    def test_item_outside_category(self, db, catalog):
        """Test a known item under another category key."""
        contracts = self.contracts(db, catalog, ["W1", "E1"])
        error = LookupValidator(db).check_all(contracts).errors[0]
        assert error.key == "errors.dimension_validation.items_not_in_category"
        assert error.values == ["E1"]

    def test_unknown_item(self, db, catalog):
        """Test an item missing from the reference data altogether."""
        contracts = self.contracts(db, catalog, ["W1", "Z9"])
        error = LookupValidator(db).check_all(contracts).errors[0]
        assert error.key == "errors.dimension_validation.unknown_reference_data_items"
        assert error.values == ["Z9"]
