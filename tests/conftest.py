"""
Pytest Configuration and Fixtures

Shared fixtures for lab result pipeline tests: an in-memory store seeded
with the default panel catalog, a few registered patients and doctors,
and a stub text-generation client.
"""
import sys
from datetime import date
from pathlib import Path

import pytest
from sqlmodel import Session, select

import models
from catalog import PanelCatalog, seed_catalog
from config import PipelineConfig, load_config
from db import create_db_engine, init_db

ROOT = Path(__file__).parent.parent
FAKE_CLASSIFIER = Path(__file__).parent / "fixtures" / "fake_classifier.py"


class StubTextClient:
    """Records prompts and answers with canned text."""

    def __init__(self, text: str = "1) BP panel 2) No abnormal findings 3) Low priority", error=None):
        self.text = text
        self.error = error
        self.prompts = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
def config(monkeypatch) -> PipelineConfig:
    monkeypatch.delenv("LABFLOW_DATABASE_URL", raising=False)
    cfg = load_config(str(ROOT / "lab_pipeline.yaml"))
    cfg.database.url = "sqlite://"
    cfg.classifier.command = [sys.executable, str(FAKE_CLASSIFIER)]
    cfg.classifier.timeout_seconds = 30
    cfg.classifier.max_concurrency = 2
    return cfg


@pytest.fixture
def engine(config):
    engine = create_db_engine(config.database.url)
    init_db(engine)
    with Session(engine) as session:
        seed_catalog(session, config.catalog)
    yield engine
    engine.dispose()


@pytest.fixture
def catalog(engine) -> PanelCatalog:
    with Session(engine) as session:
        return PanelCatalog.load(session)


@pytest.fixture
def clinic(engine):
    """Registered patients and doctors the pipeline can reference."""
    with Session(engine) as session:
        session.add_all([
            models.Patient(patient_number="000000123", name="Somchai Jaidee"),
            models.Patient(patient_number="000000456", name="Malee Srisuk"),
            models.Patient(patient_number="000000789", name="Niran Thongdee"),
            models.Doctor(id=7, name="Dr. Anan Wongsa"),
            models.Doctor(id=8, name="Dr. Ploy Chaiyo"),
        ])
        session.flush()
        session.add_all([
            models.PatientDemographics(patient_number="000000123", gender="male",
                                       date_of_birth=date(1980, 5, 1)),
            models.PatientDemographics(patient_number="000000456", gender="female",
                                       date_of_birth=date(1992, 11, 23)),
        ])
        session.commit()
    return engine


@pytest.fixture
def text_client() -> StubTextClient:
    return StubTextClient()


@pytest.fixture
def count_rows(engine):
    def _count(model, *criteria):
        with Session(engine) as session:
            query = select(model)
            if criteria:
                query = query.where(*criteria)
            return len(session.exec(query).all())
    return _count


def make_csv(header, rows) -> bytes:
    lines = [",".join(header)]
    for row in rows:
        lines.append(",".join(str(cell) for cell in row))
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture
def csv_bytes():
    return make_csv
