# pipeline.py
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from catalog import PanelCatalog, seed_catalog
from classify.invoker import ClassificationInvoker
from config import PipelineConfig, load_config
from db import create_db_engine, get_session, init_db
from errors import LabPipelineError, NoDataError, NoDataForDateError, RowValidationError
from ingest.coordinator import FAILED, PROCESSED, SKIPPED, BatchOutcome, IngestionCoordinator
from ingest.file_connector import FileConnector
from ingest.row_grouper import Batch, RowGrouper
from recommend.generator import CREATED, RecommendationGenerator
from recommend.text_client import TextGenerationClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class BatchReport(BaseModel):
    patient_number: str
    test_date: str
    doctor_id: int
    status: str
    assignment: Optional[str] = None
    rows: List[int] = []
    test_instance_ids: List[int] = []
    recommendation: Optional[str] = None
    warnings: List[str] = []
    error: Optional[str] = None


class UploadSummary(BaseModel):
    message: str = "Lab results uploaded successfully."
    rows_read: int = 0
    rows_rejected: int = 0
    batches_total: int = 0
    batches_processed: int = 0
    batches_skipped: int = 0
    batches_failed: int = 0
    patients_processed: int = 0
    assignments_created: int = 0
    assignments_existing: int = 0
    test_instances_created: int = 0
    measurements_written: int = 0
    instances_classified: int = 0
    classification_failures: int = 0
    recommendations_created: int = 0
    recommendations_existing: int = 0
    recommendations_skipped: int = 0
    recommendations_failed: int = 0
    warnings: List[str] = []
    batches: List[BatchReport] = []


class LabResultPipeline:
    """
    file -> batches -> one transaction per batch -> classification -> recommendations
    """

    def __init__(self, engine, catalog: PanelCatalog, classifier: ClassificationInvoker,
                 recommender: RecommendationGenerator):
        self.engine = engine
        self.catalog = catalog
        self.coordinator = IngestionCoordinator(engine, catalog)
        self.classifier = classifier
        self.recommender = recommender

    @classmethod
    def from_config(cls, config: PipelineConfig, engine=None, text_client=None) -> "LabResultPipeline":
        engine = engine or create_db_engine(config.database.url, config.database.echo)
        init_db(engine)
        with get_session(engine) as session:
            seed_catalog(session, config.catalog)
            catalog = PanelCatalog.load(session)
        classifier = ClassificationInvoker(engine, catalog, config.classifier)
        recommender = RecommendationGenerator(
            engine, text_client or TextGenerationClient(config.text_generation)
        )
        return cls(engine, catalog, classifier, recommender)

    def run_file(self, content: bytes, filename: Optional[str], uploaded_by: Optional[int] = None) -> UploadSummary:
        frame = FileConnector(filename).read(content)
        grouper = RowGrouper(self.catalog)
        summary = self.run_batches(grouper.group(frame), uploaded_by)

        summary.rows_read = grouper.rows_read
        summary.rows_rejected = grouper.rows_rejected
        if summary.batches_total == 0:
            if grouper.row_errors:
                raise RowValidationError("CSV validation failed", grouper.row_errors + grouper.warnings)
            raise NoDataError("No measurement values found in file")
        summary.warnings = grouper.row_errors + grouper.warnings + summary.warnings
        return summary

    def run_batches(self, batches: Iterable[Batch], uploaded_by: Optional[int] = None) -> UploadSummary:
        summary = UploadSummary()
        outcomes: List[Tuple[Batch, BatchOutcome]] = []

        for batch in batches:
            outcome = self.coordinator.ingest(batch, uploaded_by)
            outcomes.append((batch, outcome))
            summary.warnings.extend(outcome.warnings)
            if outcome.status == FAILED:
                summary.warnings.append(f"Failed to store results for {batch.describe()}: {outcome.error}")

        processed = [(b, o) for b, o in outcomes if o.status == PROCESSED]

        # Classification only sees committed instances
        instance_ids = [i for _, o in processed for i in o.test_instance_ids]
        report = self.classifier.classify_many(instance_ids)
        summary.instances_classified = len(report.classified)
        summary.classification_failures = len(report.failed)

        recommendation_status = self._recommend(processed, summary)

        patients = set()
        for batch, outcome in outcomes:
            summary.batches_total += 1
            if outcome.status == PROCESSED:
                summary.batches_processed += 1
                patients.add(batch.patient_number)
                if outcome.assignment_created:
                    summary.assignments_created += 1
                else:
                    summary.assignments_existing += 1
                summary.test_instances_created += len(outcome.test_instance_ids)
                summary.measurements_written += outcome.measurements_written
            elif outcome.status == SKIPPED:
                summary.batches_skipped += 1
            else:
                summary.batches_failed += 1

            summary.batches.append(BatchReport(
                patient_number=outcome.patient_number,
                test_date=outcome.test_date,
                doctor_id=outcome.doctor_id,
                status=outcome.status,
                rows=batch.row_numbers,
                assignment=None if outcome.assignment_created is None
                else ("created" if outcome.assignment_created else "existing"),
                test_instance_ids=outcome.test_instance_ids,
                recommendation=recommendation_status.get((batch.patient_number, batch.test_date)),
                warnings=outcome.warnings,
                error=outcome.error,
            ))
        summary.patients_processed = len(patients)
        logger.info(
            f"Pipeline complete: {summary.batches_processed}/{summary.batches_total} batches, "
            f"{summary.test_instances_created} tests, {summary.recommendations_created} recommendations"
        )
        return summary

    def _recommend(self, processed, summary: UploadSummary) -> Dict[tuple, str]:
        """One best-effort recommendation per (patient, date); never raises."""
        statuses: Dict[tuple, str] = {}
        for batch, _ in processed:
            key = (batch.patient_number, batch.test_date)
            if key in statuses:
                continue
            try:
                result = self.recommender.generate(batch.patient_number, batch.test_date, batch.doctor_id)
                statuses[key] = result.status
                logger.info(f"{result.message}: patient {batch.patient_number} on {batch.test_date}")
                if result.status == CREATED:
                    summary.recommendations_created += 1
                else:
                    summary.recommendations_existing += 1
            except NoDataForDateError as e:
                logger.info(e.message)
                statuses[key] = "no_data"
                summary.recommendations_skipped += 1
            except Exception as e:
                logger.error(
                    f"Failed to generate recommendation for {batch.patient_number} on {batch.test_date}: {e}"
                )
                statuses[key] = "failed"
                summary.recommendations_failed += 1
        return statuses


def run_pipeline(file_path: str, config_path: Optional[str] = None, uploaded_by: Optional[int] = None):
    """Run the pipeline over a local file and print the summary."""
    cfg = load_config(config_path)
    logging.getLogger().setLevel(cfg.logging.level.upper())
    logger.info(f"Running pipeline on {file_path}")

    with open(file_path, "rb") as f:
        content = f.read()

    pipeline = LabResultPipeline.from_config(cfg)
    try:
        summary = pipeline.run_file(content, file_path, uploaded_by)
    except LabPipelineError as e:
        logger.error(f"Pipeline rejected {file_path}: {e.message}")
        return e.to_dict()
    return summary.model_dump()
