# normalize/lab_row.py
from datetime import date, datetime
from typing import Dict

from pydantic import BaseModel, field_validator

from normalize.transformer import clean_cell


class LabRow(BaseModel):
    """Key columns of one uploaded lab result row"""
    patient_number: str
    panel_id: int
    test_date: date
    doctor_id: int
    measurements: Dict[int, str] = {}

    @field_validator("patient_number", mode="before")
    @classmethod
    def validate_patient_number(cls, v):
        text = clean_cell(v)
        if text is None:
            raise ValueError("patient number cannot be empty")
        return text

    @field_validator("panel_id", "doctor_id", mode="before")
    @classmethod
    def validate_identifier(cls, v):
        text = clean_cell(v)
        if text is None:
            raise ValueError("identifier cannot be empty")
        # pandas can hand back "7.0" for integer columns
        if text.endswith(".0"):
            text = text[:-2]
        try:
            return int(text)
        except ValueError:
            raise ValueError(f"'{text}' is not an integer identifier")

    @field_validator("test_date", mode="before")
    @classmethod
    def validate_test_date(cls, v):
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, date):
            return v
        text = clean_cell(v)
        if text is None:
            raise ValueError("test date cannot be empty")
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            raise ValueError(f"Invalid date format. Expected YYYY-MM-DD, got: {text}")

    @property
    def key(self):
        return (self.patient_number, self.test_date, self.doctor_id)
