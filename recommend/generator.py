# recommend/generator.py
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from db import insert_ignore
from errors import NoDataForDateError
from models import (
    MeasurementItem,
    MeasurementValue,
    PanelDefinition,
    Patient,
    Recommendation,
    RecommendationStatus,
    TestInstance,
    utcnow,
)
from normalize.transformer import demographic_to_label
from recommend.prompt import LabLine, build_prompt

logger = logging.getLogger(__name__)

CREATED = "created"
EXISTS = "exists"


@dataclass
class RecommendationResult:
    status: str
    patient_number: str
    test_date: date
    recommendation_id: Optional[int] = None

    @property
    def message(self) -> str:
        if self.status == EXISTS:
            return "Recommendation already exists for this date"
        return "Recommendation generated and saved successfully for date group"


def fetch_lab_lines(session: Session, patient_id: int, test_date: date) -> List[LabLine]:
    """
    Every measurement for a patient on a calendar date, ordered by panel
    name then item name. Demographic values come back human-readable and
    without a classification.
    """
    rows = session.exec(
        select(
            PanelDefinition.name,
            MeasurementItem.name,
            MeasurementValue.value,
            MeasurementValue.classification,
            MeasurementItem.unit,
            MeasurementItem.demographic_field,
        )
        .join(TestInstance, MeasurementValue.test_instance_id == TestInstance.id)
        .join(MeasurementItem, MeasurementValue.item_id == MeasurementItem.id)
        .join(PanelDefinition, TestInstance.panel_id == PanelDefinition.id)
        .where(TestInstance.patient_id == patient_id, TestInstance.test_date == test_date)
        .order_by(PanelDefinition.name, MeasurementItem.name, TestInstance.id)
    ).all()

    lines = []
    for panel_name, item_name, value, classification, unit, demographic_field in rows:
        if demographic_field:
            lines.append(LabLine(panel_name, item_name, demographic_to_label(demographic_field, value),
                                 "", None, demographic=True))
        else:
            lines.append(LabLine(panel_name, item_name, value, unit or "", classification))
    return lines


class RecommendationGenerator:
    """Builds and stores at most one recommendation per patient per test date."""

    def __init__(self, engine, text_client):
        self.engine = engine
        self.text_client = text_client

    def _find_existing(self, session: Session, patient_id: int, test_date: date) -> Optional[Recommendation]:
        return session.exec(
            select(Recommendation).where(
                Recommendation.patient_id == patient_id,
                Recommendation.test_date == test_date,
            )
        ).first()

    def _load(self, patient_number: str, test_date: date) -> Tuple[Patient, List[LabLine], Optional[int]]:
        with Session(self.engine) as session:
            patient = session.exec(select(Patient).where(Patient.patient_number == patient_number)).first()
            if patient is None:
                raise NoDataForDateError(patient_number, test_date)
            lines = fetch_lab_lines(session, patient.id, test_date)
            if not lines:
                raise NoDataForDateError(patient_number, test_date)
            existing = self._find_existing(session, patient.id, test_date)
            session.expunge(patient)
            return patient, lines, existing.id if existing else None

    def generate(self, patient_number: str, test_date: date, doctor_id: Optional[int] = None) -> RecommendationResult:
        patient, lines, existing_id = self._load(patient_number, test_date)
        if existing_id is not None:
            logger.info(f"Recommendation already exists for {patient_number} on {test_date}")
            return RecommendationResult(EXISTS, patient_number, test_date, existing_id)

        prompt = build_prompt(patient.name, lines)
        text = self.text_client.generate(prompt)

        now = utcnow()
        with Session(self.engine) as session, session.begin():
            # The unique (patient_id, test_date) constraint settles concurrent uploads
            inserted = insert_ignore(
                session,
                Recommendation,
                {
                    "patient_id": patient.id,
                    "doctor_id": doctor_id,
                    "test_date": test_date,
                    "generated_text": text,
                    "status": RecommendationStatus.PENDING.value,
                    "created_at": now,
                    "updated_at": now,
                },
                ("patient_id", "test_date"),
            )
            existing = self._find_existing(session, patient.id, test_date)
            recommendation_id = existing.id if existing else None

        if not inserted:
            logger.info(f"Recommendation for {patient_number} on {test_date} was created concurrently")
            return RecommendationResult(EXISTS, patient_number, test_date, recommendation_id)

        logger.info(f"Recommendation {recommendation_id} generated for {patient_number} on {test_date}")
        return RecommendationResult(CREATED, patient_number, test_date, recommendation_id)
