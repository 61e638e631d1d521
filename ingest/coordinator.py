# ingest/coordinator.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlmodel import Session, select

from catalog import PanelCatalog
from db import insert_ignore
from ingest.row_grouper import Batch, MeasurementEntry
from models import (
    Doctor,
    MeasurementValue,
    Patient,
    PatientDemographics,
    PatientDoctorAssignment,
    TestInstance,
    TestStatus,
    utcnow,
)
from normalize.transformer import normalize_value

logger = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class BatchOutcome:
    patient_number: str
    test_date: str
    doctor_id: int
    status: str = PROCESSED
    assignment_created: Optional[bool] = None
    test_instance_ids: List[int] = field(default_factory=list)
    measurements_written: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


class IngestionCoordinator:
    """
    Writes one Batch per transaction: doctor assignment, test instances
    and raw measurement values. A failing batch rolls back on its own.
    """

    def __init__(self, engine, catalog: PanelCatalog):
        self.engine = engine
        self.catalog = catalog

    def ingest(self, batch: Batch, uploaded_by: Optional[int] = None) -> BatchOutcome:
        outcome = BatchOutcome(batch.patient_number, batch.test_date.isoformat(), batch.doctor_id)
        try:
            with Session(self.engine) as session, session.begin():
                self._ingest(session, batch, uploaded_by, outcome)
        except Exception as e:
            logger.exception(f"Rolled back batch for {batch.describe()}: {e}")
            outcome.status = FAILED
            outcome.error = str(e)
            outcome.test_instance_ids = []
            outcome.measurements_written = 0
            outcome.assignment_created = None
        return outcome

    def _skip(self, outcome: BatchOutcome, message: str):
        logger.warning(message)
        outcome.status = SKIPPED
        outcome.warnings.append(message)

    def _ingest(self, session: Session, batch: Batch, uploaded_by, outcome: BatchOutcome):
        patient = session.exec(
            select(Patient).where(Patient.patient_number == batch.patient_number)
        ).first()
        if patient is None:
            self._skip(outcome, f"Patient not found: {batch.patient_number}. Skipping {batch.describe()}")
            return

        if session.get(Doctor, batch.doctor_id) is None:
            self._skip(outcome, f"Doctor not found: {batch.doctor_id}. Skipping {batch.describe()}")
            return

        panels = {}
        for panel_id, entries in batch.panels.items():
            if self.catalog.has_panel(panel_id):
                panels[panel_id] = entries
            else:
                message = f"Unknown panel {panel_id} for {batch.describe()}, panel skipped"
                logger.warning(message)
                outcome.warnings.append(message)
        if not panels:
            self._skip(outcome, f"No known panels for {batch.describe()}. Skipping")
            return

        outcome.assignment_created = insert_ignore(
            session,
            PatientDoctorAssignment,
            {
                "patient_id": patient.id,
                "doctor_id": batch.doctor_id,
                "assigned_by": uploaded_by,
                "assigned_at": utcnow(),
            },
            ("patient_id", "doctor_id"),
        )
        if not outcome.assignment_created:
            logger.info(f"Patient-doctor relationship already exists: {batch.patient_number} / {batch.doctor_id}")

        demographics = session.exec(
            select(PatientDemographics).where(PatientDemographics.patient_number == batch.patient_number)
        ).first()

        for panel_id, entries in panels.items():
            entries = self._with_demographics(panel_id, list(entries), demographics, outcome)

            instance = TestInstance(
                patient_id=patient.id,
                panel_id=panel_id,
                test_date=batch.test_date,
                doctor_id=batch.doctor_id,
                uploaded_by=uploaded_by,
                status=TestStatus.PENDING.value,
            )
            session.add(instance)
            session.flush()

            session.add_all([
                MeasurementValue(test_instance_id=instance.id, item_id=entry.item_id, value=entry.value)
                for entry in entries
            ])

            missing = self.catalog.missing_item_ids(panel_id, [entry.item_id for entry in entries])
            if missing:
                names = ", ".join(self.catalog.item(item_id).name for item_id in missing)
                message = f"Panel {self.catalog.panel(panel_id).name} for {batch.describe()} is missing: {names}"
                logger.warning(message)
                outcome.warnings.append(message)

            outcome.test_instance_ids.append(instance.id)
            outcome.measurements_written += len(entries)

        patient.has_lab_data = True
        session.add(patient)
        session.flush()
        logger.info(
            f"Ingested {len(outcome.test_instance_ids)} tests, "
            f"{outcome.measurements_written} values for {batch.describe()}"
        )

    def _with_demographics(self, panel_id: int, entries: List[MeasurementEntry],
                           demographics: Optional[PatientDemographics],
                           outcome: BatchOutcome) -> List[MeasurementEntry]:
        """Append demographic items the panel needs but the upload did not carry."""
        present = {entry.item_id for entry in entries}
        for item in self.catalog.demographic_items(panel_id):
            if item.id in present:
                continue
            stored = getattr(demographics, item.demographic_field, None) if demographics else None
            if stored is None:
                message = f"No {item.demographic_field} on record for patient {outcome.patient_number}"
                logger.warning(message)
                outcome.warnings.append(message)
                continue
            try:
                value = normalize_value(item.demographic_field, stored)
            except ValueError as e:
                message = f"Stored {item.demographic_field} for patient {outcome.patient_number} unusable: {e}"
                logger.warning(message)
                outcome.warnings.append(message)
                continue
            entries.append(MeasurementEntry(item.id, value))
        return entries
