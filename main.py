# main.py
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

import fire
import uvicorn
from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from catalog import seed_catalog
from config import PipelineConfig, load_config
from db import create_db_engine, get_session, init_db
from errors import BatchRejectedError, FileFormatError, LabPipelineError, RowValidationError
from ingest.coordinator import PROCESSED
from ingest.row_grouper import Batch, MeasurementEntry
from normalize.transformer import normalize_value
from pipeline import LabResultPipeline, UploadSummary, run_pipeline
from recommend.review import RecommendationReview

# Configure logger
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ItemValue(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    item_id: int
    value: str


class PanelSubmission(BaseModel):
    panel_id: int
    items: List[ItemValue] = Field(min_length=1)


class LabSubmission(BaseModel):
    patient_number: str = Field(min_length=1)
    doctor_id: int
    test_date: Optional[date] = None
    panels: List[PanelSubmission] = Field(min_length=1)


class RecommendationRevision(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    generated_recommendation: str = Field(min_length=1)


def current_user(x_user_id: Optional[int] = Header(default=None)) -> int:
    """
    Identity of the uploader, supplied by the authentication layer in front
    of this service.
    """
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authenticated user required")
    return x_user_id


def create_app(config: Optional[PipelineConfig] = None, engine=None, text_client=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or load_config()
        logging.getLogger().setLevel(cfg.logging.level.upper())
        db_engine = engine or create_db_engine(cfg.database.url, cfg.database.echo)
        app.state.pipeline = LabResultPipeline.from_config(cfg, db_engine, text_client)
        app.state.review = RecommendationReview(db_engine)
        yield

    app = FastAPI(title="labflow", lifespan=lifespan)

    @app.exception_handler(LabPipelineError)
    async def pipeline_error_handler(request: Request, exc: LabPipelineError):
        status_code = exc.status_code if exc.status_code < 500 else 500
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/")
    def read_root():
        return {"labflow": "Pipeline is live. POST a file to /lab-results/upload."}

    @app.post("/lab-results/upload", response_model=UploadSummary)
    def upload_lab_results(file: Optional[UploadFile] = File(default=None), user_id: int = Depends(current_user)):
        if file is None or not file.filename:
            raise FileFormatError("CSV file is required.")
        content = file.file.read()
        logger.info(f"Upload {file.filename} ({len(content)} bytes) by user {user_id}")
        return app.state.pipeline.run_file(content, file.filename, user_id)

    @app.post("/lab-results", response_model=UploadSummary, status_code=201)
    def submit_lab_results(submission: LabSubmission, user_id: int = Depends(current_user)):
        pipeline = app.state.pipeline
        batch = Batch(
            patient_number=submission.patient_number.strip(),
            test_date=submission.test_date or date.today(),
            doctor_id=submission.doctor_id,
        )
        errors = []
        for panel in submission.panels:
            entries = batch.panels.setdefault(panel.panel_id, [])
            for item_value in panel.items:
                item = pipeline.catalog.item(item_value.item_id)
                if item is None:
                    errors.append(f"Unknown measurement item {item_value.item_id}")
                    continue
                try:
                    entries.append(MeasurementEntry(item.id, normalize_value(item.demographic_field, item_value.value)))
                except ValueError as e:
                    errors.append(f"{item.name}: {e}")
        if errors:
            raise RowValidationError("Lab data validation failed", errors)
        summary = pipeline.run_batches([batch], user_id)
        report = summary.batches[0]
        if report.status != PROCESSED:
            raise BatchRejectedError(f"Lab data for {batch.describe()} was {report.status}", summary.warnings)
        summary.message = "Lab data uploaded and processed successfully"
        return summary

    @app.get("/recommendations")
    def list_recommendations(status: Optional[str] = None):
        return {"success": True, "data": app.state.review.list_recommendations(status)}

    @app.get("/recommendations/{recommendation_id}")
    def get_recommendation(recommendation_id: int):
        return app.state.review.get_recommendation(recommendation_id)

    @app.patch("/recommendations/{recommendation_id}")
    def revise_recommendation(recommendation_id: int, body: RecommendationRevision,
                              user_id: int = Depends(current_user)):
        return {"success": True, "data": app.state.review.revise(recommendation_id, body.generated_recommendation)}

    @app.post("/recommendations/{recommendation_id}/send")
    def send_recommendation(recommendation_id: int, user_id: int = Depends(current_user)):
        return {"success": True, "data": app.state.review.mark_sent(recommendation_id)}

    @app.post("/recommendations/{recommendation_id}/approve")
    def approve_recommendation(recommendation_id: int, user_id: int = Depends(current_user)):
        return {"success": True, "data": app.state.review.approve(recommendation_id)}

    return app


app = create_app()


def init(config_path: Optional[str] = None):
    """Create tables and seed the panel catalog."""
    cfg = load_config(config_path)
    engine = create_db_engine(cfg.database.url, cfg.database.echo)
    init_db(engine)
    with get_session(engine) as session:
        added = seed_catalog(session, cfg.catalog)
    return f"Database ready at {cfg.database.url} ({added} catalog rows added)"


def seed(config_path: Optional[str] = None):
    """Add catalog panels and items missing from an existing database."""
    cfg = load_config(config_path)
    engine = create_db_engine(cfg.database.url, cfg.database.echo)
    with get_session(engine) as session:
        added = seed_catalog(session, cfg.catalog)
    return f"{added} catalog rows added"


def serve(host: str = "0.0.0.0", port: Optional[int] = None):
    uvicorn.run(app, host=host, port=port or int(os.environ.get("PORT", 8000)))


# CLI entrypoint using python-fire
def cli():
    fire.Fire({
        "init_db": init,
        "seed_catalog": seed,
        "run_pipeline": run_pipeline,
        "serve": serve,
    })


# Entry point for CLI or server
if __name__ == "__main__":
    cli()
