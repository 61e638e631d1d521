# ingest/row_grouper.py
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterator, List, NamedTuple, Optional

import pandas as pd
from pydantic import ValidationError

from catalog import PanelCatalog
from normalize.lab_row import LabRow
from normalize.transformer import clean_cell, normalize_value

logger = logging.getLogger(__name__)

# Accepted header names for the key columns, first match wins
COLUMN_ALIASES = {
    "patient_number": ("patient_number", "hn_number", "HN"),
    "panel_id": ("panel_id", "lab_test_master_id"),
    "test_date": ("test_date", "lab_test_date"),
    "doctor_id": ("doctor_id",),
}


class MeasurementEntry(NamedTuple):
    item_id: int
    value: str


@dataclass
class Batch:
    """All measurements for one (patient, test date, ordering doctor)."""
    patient_number: str
    test_date: date
    doctor_id: int
    panels: Dict[int, List[MeasurementEntry]] = field(default_factory=dict)
    row_numbers: List[int] = field(default_factory=list)

    @property
    def key(self):
        return (self.patient_number, self.test_date, self.doctor_id)

    def describe(self) -> str:
        return f"patient {self.patient_number} on {self.test_date} (doctor {self.doctor_id})"


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        msg = err["msg"].replace("Value error, ", "")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class RowGrouper:
    """
    Groups uploaded rows into per-(patient, date, doctor) batches.
    Bad rows are rejected one at a time and reported in row_errors.
    """

    def __init__(self, catalog: PanelCatalog):
        self.catalog = catalog
        self.rows_read = 0
        self.rows_rejected = 0
        self.row_errors: List[str] = []
        self.warnings: List[str] = []

    def _resolve_key_columns(self, columns) -> Dict[str, Optional[str]]:
        present = {str(c).strip(): c for c in columns}
        lowered = {name.lower(): original for name, original in present.items()}
        resolved = {}
        for field_name, aliases in COLUMN_ALIASES.items():
            resolved[field_name] = None
            for alias in aliases:
                if alias in present:
                    resolved[field_name] = present[alias]
                    break
                if alias.lower() in lowered:
                    resolved[field_name] = lowered[alias.lower()]
                    break
        return resolved

    def _parse_row(self, record: dict, key_columns: Dict[str, str], item_columns: Dict) -> LabRow:
        errors = []
        measurements = {}
        for column, item in item_columns.items():
            raw = clean_cell(record.get(column))
            if raw is None:
                continue
            try:
                measurements[item.id] = normalize_value(item.demographic_field, raw)
            except ValueError as e:
                errors.append(f"{item.name}: {e}")

        try:
            row = LabRow(
                patient_number=record.get(key_columns["patient_number"]),
                panel_id=record.get(key_columns["panel_id"]),
                test_date=record.get(key_columns["test_date"]),
                doctor_id=record.get(key_columns["doctor_id"]),
                measurements=measurements,
            )
        except ValidationError as e:
            errors.insert(0, format_validation_error(e))
            row = None

        if errors:
            raise ValueError("; ".join(errors))
        return row

    def group(self, frame: pd.DataFrame) -> Iterator[Batch]:
        key_columns = self._resolve_key_columns(frame.columns)
        missing = [name for name, column in key_columns.items() if column is None]
        if missing:
            self.rows_read = len(frame)
            self.rows_rejected = len(frame)
            for name in missing:
                self.row_errors.append(f"Missing required column: {name}")
            logger.warning(f"Upload rejected, missing columns: {', '.join(missing)}")
            return

        key_names = set(key_columns.values())
        item_columns = {}
        for column in frame.columns:
            if column in key_names:
                continue
            item = self.catalog.item_by_column(column)
            if item is None:
                logger.debug(f"Ignoring unrecognized column '{column}'")
                continue
            item_columns[column] = item

        groups: Dict[tuple, Batch] = {}
        values: Dict[tuple, Dict[int, Dict[int, str]]] = {}

        for position, record in enumerate(frame.to_dict("records")):
            row_number = position + 2  # header is line 1
            if all(clean_cell(cell) is None for cell in record.values()):
                continue
            self.rows_read += 1
            try:
                row = self._parse_row(record, key_columns, item_columns)
            except ValueError as e:
                self.rows_rejected += 1
                message = f"Row {row_number}: {e}"
                self.row_errors.append(message)
                logger.warning(message)
                continue

            if not row.measurements:
                self.warnings.append(f"Row {row_number}: no measurement values, nothing to store")
                continue

            batch = groups.get(row.key)
            if batch is None:
                batch = Batch(row.patient_number, row.test_date, row.doctor_id)
                groups[row.key] = batch
                values[row.key] = {}
            batch.row_numbers.append(row_number)

            panel_values = values[row.key].setdefault(row.panel_id, {})
            for item_id, value in row.measurements.items():
                previous = panel_values.get(item_id)
                if previous is not None and previous != value:
                    name = self.catalog.item(item_id).name
                    self.warnings.append(
                        f"Row {row_number}: duplicate {name} for {batch.describe()}, using latest value {value}"
                    )
                panel_values[item_id] = value

        logger.info(
            f"Grouped {self.rows_read - self.rows_rejected} of {self.rows_read} rows into {len(groups)} batches"
        )
        for key, batch in groups.items():
            batch.panels = {
                panel_id: [MeasurementEntry(item_id, value) for item_id, value in items.items()]
                for panel_id, items in values[key].items()
            }
            yield batch
