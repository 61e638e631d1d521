# recommend/review.py
import logging
from typing import Dict, List, Optional

from sqlmodel import Session, select

from errors import NotFoundError, RecommendationStateError
from models import Doctor, Patient, Recommendation, RecommendationStatus, utcnow
from recommend.generator import fetch_lab_lines

logger = logging.getLogger(__name__)

# status -> statuses it may move to
TRANSITIONS = {
    RecommendationStatus.PENDING.value: {RecommendationStatus.SENT.value, RecommendationStatus.APPROVED.value},
    RecommendationStatus.SENT.value: {RecommendationStatus.APPROVED.value},
    RecommendationStatus.APPROVED.value: set(),
}


def _summary(recommendation: Recommendation, patient: Patient, doctor: Optional[Doctor]) -> Dict:
    return {
        "recommendation_id": recommendation.id,
        "patient_number": patient.patient_number,
        "patient_name": patient.name,
        "doctor_id": recommendation.doctor_id,
        "doctor_name": doctor.name if doctor else None,
        "test_date": recommendation.test_date.isoformat(),
        "generated_recommendation": recommendation.generated_text,
        "doctor_recommendation": recommendation.doctor_text,
        "status": recommendation.status,
        "updated_at": recommendation.updated_at.isoformat(),
    }


class RecommendationReview:
    """Doctor-facing lifecycle of stored recommendations."""

    def __init__(self, engine):
        self.engine = engine

    def list_recommendations(self, status: Optional[str] = None) -> List[Dict]:
        with Session(self.engine) as session:
            query = (
                select(Recommendation, Patient, Doctor)
                .join(Patient, Recommendation.patient_id == Patient.id)
                .join(Doctor, Recommendation.doctor_id == Doctor.id, isouter=True)
                .order_by(Recommendation.updated_at.desc(), Recommendation.id.desc())
            )
            if status:
                query = query.where(Recommendation.status == status)
            return [_summary(r, p, d) for r, p, d in session.exec(query).all()]

    def get_recommendation(self, recommendation_id: int) -> Dict:
        with Session(self.engine) as session:
            recommendation = self._get(session, recommendation_id)
            patient = session.get(Patient, recommendation.patient_id)
            doctor = session.get(Doctor, recommendation.doctor_id) if recommendation.doctor_id else None
            detail = _summary(recommendation, patient, doctor)
            detail["results"] = [
                {
                    "panel": line.panel_name,
                    "item": line.item_name,
                    "value": line.value,
                    "unit": line.unit,
                    "classification": line.classification,
                }
                for line in fetch_lab_lines(session, patient.id, recommendation.test_date)
            ]
            return detail

    def revise(self, recommendation_id: int, text: str) -> Dict:
        if not text or not text.strip():
            raise ValueError("Recommendation text is required")
        with Session(self.engine) as session, session.begin():
            recommendation = self._get(session, recommendation_id)
            if recommendation.status == RecommendationStatus.APPROVED.value:
                raise RecommendationStateError(recommendation_id, recommendation.status, "revised")
            recommendation.doctor_text = text.strip()
            recommendation.updated_at = utcnow()
            session.add(recommendation)
            session.flush()
            return self._detach_summary(session, recommendation)

    def mark_sent(self, recommendation_id: int) -> Dict:
        return self._transition(recommendation_id, RecommendationStatus.SENT.value)

    def approve(self, recommendation_id: int) -> Dict:
        return self._transition(recommendation_id, RecommendationStatus.APPROVED.value)

    def _transition(self, recommendation_id: int, target: str) -> Dict:
        with Session(self.engine) as session, session.begin():
            recommendation = self._get(session, recommendation_id)
            if target not in TRANSITIONS.get(recommendation.status, set()):
                raise RecommendationStateError(recommendation_id, recommendation.status, target)
            recommendation.status = target
            recommendation.updated_at = utcnow()
            session.add(recommendation)
            session.flush()
            logger.info(f"Recommendation {recommendation_id} is now {target}")
            return self._detach_summary(session, recommendation)

    def _get(self, session: Session, recommendation_id: int) -> Recommendation:
        recommendation = session.get(Recommendation, recommendation_id)
        if recommendation is None:
            raise NotFoundError("Recommendation", recommendation_id)
        return recommendation

    def _detach_summary(self, session: Session, recommendation: Recommendation) -> Dict:
        patient = session.get(Patient, recommendation.patient_id)
        doctor = session.get(Doctor, recommendation.doctor_id) if recommendation.doctor_id else None
        return _summary(recommendation, patient, doctor)
