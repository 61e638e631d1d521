"""
Unit Tests for the ingestion coordinator: one transaction per batch,
idempotent doctor assignment, demographic synthesis and rollback.
"""
from datetime import date

import pytest
from sqlmodel import Session, select

import models
from ingest.coordinator import FAILED, PROCESSED, SKIPPED, IngestionCoordinator
from ingest.row_grouper import Batch, MeasurementEntry


def make_batch(patient="000000123", panels=None, doctor=7, test_date=date(2024, 1, 1)):
    batch = Batch(patient, test_date, doctor)
    batch.panels = panels if panels is not None else {
        1: [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")]
    }
    return batch


@pytest.fixture
def coordinator(clinic, catalog):
    return IngestionCoordinator(clinic, catalog)


def stored_values(engine, test_instance_id):
    with Session(engine) as session:
        rows = session.exec(
            select(models.MeasurementValue).where(models.MeasurementValue.test_instance_id == test_instance_id)
        ).all()
        return {row.item_id: (row.value, row.classification) for row in rows}


class TestIngest:
    def test_creates_instance_and_values(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch(), uploaded_by=1)

        assert outcome.status == PROCESSED
        assert outcome.assignment_created is True
        assert len(outcome.test_instance_ids) == 1
        assert outcome.measurements_written == 2
        assert stored_values(clinic, outcome.test_instance_ids[0]) == {1: ("120", None), 2: ("80", None)}

        with Session(clinic) as session:
            instance = session.get(models.TestInstance, outcome.test_instance_ids[0])
            assert instance.status == models.TestStatus.PENDING.value
            assert instance.test_date == date(2024, 1, 1)
            assert instance.uploaded_by == 1
            patient = session.exec(
                select(models.Patient).where(models.Patient.patient_number == "000000123")
            ).one()
            assert patient.has_lab_data is True

    def test_one_instance_per_panel(self, coordinator, count_rows):
        outcome = coordinator.ingest(make_batch(panels={
            1: [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")],
            2: [MeasurementEntry(3, "190"), MeasurementEntry(4, "150"),
                MeasurementEntry(5, "45"), MeasurementEntry(6, "110")],
        }))
        assert len(outcome.test_instance_ids) == 2
        assert count_rows(models.TestInstance) == 2
        assert count_rows(models.MeasurementValue) == 6

    def test_assignment_is_idempotent(self, coordinator, count_rows):
        first = coordinator.ingest(make_batch())
        second = coordinator.ingest(make_batch())

        assert first.assignment_created is True
        assert second.assignment_created is False
        assert second.status == PROCESSED
        assert count_rows(models.PatientDoctorAssignment) == 1
        # every upload is a new test occurrence
        assert count_rows(models.TestInstance) == 2


class TestDemographics:
    def test_gender_synthesized_from_record(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch(panels={5: [MeasurementEntry(18, "6.1")]}))
        assert stored_values(clinic, outcome.test_instance_ids[0]) == {18: ("6.1", None), 9: ("0", None)}

    def test_female_encoded_as_one(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch(patient="000000456", panels={5: [MeasurementEntry(18, "4.8")]}))
        assert stored_values(clinic, outcome.test_instance_ids[0])[9] == ("1", None)

    def test_uploaded_gender_is_not_overridden(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch(panels={5: [MeasurementEntry(18, "6.1"), MeasurementEntry(9, "1")]}))
        assert stored_values(clinic, outcome.test_instance_ids[0])[9] == ("1", None)

    def test_missing_demographic_record_warns(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch(patient="000000789", panels={5: [MeasurementEntry(18, "6.1")]}))
        assert outcome.status == PROCESSED
        assert stored_values(clinic, outcome.test_instance_ids[0]) == {18: ("6.1", None)}
        assert any("No gender on record" in w for w in outcome.warnings)
        assert any("missing: Gender" in w for w in outcome.warnings)

    def test_panel_without_demographics_untouched(self, coordinator, clinic):
        outcome = coordinator.ingest(make_batch())
        assert 9 not in stored_values(clinic, outcome.test_instance_ids[0])


class TestReferentialSkips:
    def test_unknown_patient_skips_batch(self, coordinator, count_rows):
        outcome = coordinator.ingest(make_batch(patient="999999999"))
        assert outcome.status == SKIPPED
        assert "Patient not found: 999999999" in outcome.warnings[0]
        assert count_rows(models.TestInstance) == 0
        assert count_rows(models.PatientDoctorAssignment) == 0

    def test_unknown_doctor_skips_batch(self, coordinator, count_rows):
        outcome = coordinator.ingest(make_batch(doctor=99))
        assert outcome.status == SKIPPED
        assert count_rows(models.PatientDoctorAssignment) == 0

    def test_unknown_panel_dropped(self, coordinator, count_rows):
        outcome = coordinator.ingest(make_batch(panels={
            1: [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")],
            42: [MeasurementEntry(3, "190")],
        }))
        assert outcome.status == PROCESSED
        assert len(outcome.test_instance_ids) == 1
        assert any("Unknown panel 42" in w for w in outcome.warnings)

    def test_only_unknown_panels_skips_batch(self, coordinator, count_rows):
        outcome = coordinator.ingest(make_batch(panels={42: [MeasurementEntry(3, "190")]}))
        assert outcome.status == SKIPPED
        assert count_rows(models.TestInstance) == 0


class TestRollback:
    def test_failed_batch_leaves_no_partial_writes(self, coordinator, clinic, count_rows):
        # The same item twice violates the (test_instance_id, item_id) constraint
        bad = make_batch(patient="000000456", panels={
            1: [MeasurementEntry(1, "120"), MeasurementEntry(1, "130")]
        })
        outcome = coordinator.ingest(bad)

        assert outcome.status == FAILED
        assert outcome.error
        assert outcome.test_instance_ids == []
        assert count_rows(models.TestInstance) == 0
        assert count_rows(models.MeasurementValue) == 0
        assert count_rows(models.PatientDoctorAssignment) == 0
        with Session(clinic) as session:
            patient = session.exec(
                select(models.Patient).where(models.Patient.patient_number == "000000456")
            ).one()
            assert patient.has_lab_data is False

    def test_batches_are_independent(self, coordinator, count_rows):
        good = coordinator.ingest(make_batch())
        bad = coordinator.ingest(make_batch(patient="000000456", panels={
            1: [MeasurementEntry(1, "120"), MeasurementEntry(1, "130")]
        }))
        assert good.status == PROCESSED
        assert bad.status == FAILED
        assert count_rows(models.TestInstance) == 1
        assert count_rows(models.MeasurementValue) == 2
