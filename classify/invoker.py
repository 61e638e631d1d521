# classify/invoker.py
"""
Runs the external classifier once per test instance and writes the
returned labels back onto the stored measurements.

The classifier is a separate process invoked as

    <command...> <panel_id> <json object of measurement name -> value>

and must print a JSON object mapping a measurement key to
{"classification": "<label>"} on stdout. Response keys may use any of the
casings in normalize.transformer.KEY_VARIANTS.
"""
import json
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from catalog import PanelCatalog
from config import ClassifierConfig
from errors import ClassifierError
from models import (
    MeasurementItem,
    MeasurementValue,
    TestInstance,
    TestStatus,
    UNKNOWN_CLASSIFICATION,
)
from normalize.transformer import demographic_to_classifier, match_classification

logger = logging.getLogger(__name__)


@dataclass
class StoredMeasurement:
    value_id: int
    name: str
    value: str
    demographic_field: Optional[str] = None


@dataclass
class ClassificationRequest:
    test_instance_id: int
    panel_id: int
    measurements: List[StoredMeasurement]

    def payload(self) -> Dict:
        data = {}
        for m in self.measurements:
            if m.demographic_field:
                data[m.name] = demographic_to_classifier(m.demographic_field, m.value)
            else:
                number = float(m.value)
                # integral values go out as ints
                data[m.name] = int(number) if number.is_integer() else number
        return data


@dataclass
class ClassificationReport:
    classified: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)


class ClassificationInvoker:
    def __init__(self, engine, catalog: PanelCatalog, config: Optional[ClassifierConfig] = None):
        self.engine = engine
        self.catalog = catalog
        self.config = config or ClassifierConfig()

    def load_request(self, test_instance_id: int) -> ClassificationRequest:
        with Session(self.engine) as session:
            instance = session.get(TestInstance, test_instance_id)
            if instance is None:
                raise ClassifierError(f"Test instance {test_instance_id} not found", test_instance_id)
            rows = session.exec(
                select(MeasurementValue, MeasurementItem)
                .join(MeasurementItem, MeasurementValue.item_id == MeasurementItem.id)
                .where(MeasurementValue.test_instance_id == test_instance_id)
                .order_by(MeasurementItem.id)
            ).all()
            measurements = [
                StoredMeasurement(value.id, item.name, value.value, item.demographic_field)
                for value, item in rows
            ]
            return ClassificationRequest(test_instance_id, instance.panel_id, measurements)

    def invoke(self, request: ClassificationRequest) -> Dict:
        """Call the classifier process; any failure surfaces as ClassifierError."""
        try:
            payload = request.payload()
        except ValueError as e:
            raise ClassifierError(f"Stored value is not numeric: {e}", request.test_instance_id)

        args = list(self.config.command) + [str(request.panel_id), json.dumps(payload)]
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.config.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise ClassifierError(
                f"Classifier timed out after {self.config.timeout_seconds}s",
                request.test_instance_id,
            )
        except OSError as e:
            raise ClassifierError(f"Classifier could not start: {e}", request.test_instance_id)

        if completed.stderr:
            logger.debug(f"Classifier stderr for test {request.test_instance_id}: {completed.stderr.strip()}")
        if completed.returncode != 0:
            raise ClassifierError(
                f"Classifier exited with code {completed.returncode}",
                request.test_instance_id,
                {"stderr": completed.stderr.strip()},
            )

        try:
            result = json.loads(completed.stdout)
        except ValueError:
            raise ClassifierError(
                "Invalid JSON from classifier",
                request.test_instance_id,
                {"stdout": completed.stdout[:500]},
            )
        if not isinstance(result, dict):
            raise ClassifierError("Classifier response is not a JSON object", request.test_instance_id)
        return result

    def apply(self, request: ClassificationRequest, response: Dict) -> Dict[str, str]:
        """Write reconciled labels, skipping demographics, and complete the instance."""
        labels = {}
        with Session(self.engine) as session, session.begin():
            for m in request.measurements:
                if m.demographic_field:
                    continue
                label = match_classification(m.name, response) or UNKNOWN_CLASSIFICATION
                value = session.get(MeasurementValue, m.value_id)
                value.classification = label
                session.add(value)
                labels[m.name] = label
            instance = session.get(TestInstance, request.test_instance_id)
            instance.status = TestStatus.COMPLETED.value
            session.add(instance)
        return labels

    def classify(self, test_instance_id: int) -> Dict[str, str]:
        request = self.load_request(test_instance_id)
        return self.apply(request, self.invoke(request))

    def classify_many(self, test_instance_ids: Iterable[int]) -> ClassificationReport:
        """
        Classify committed test instances with bounded parallelism.
        Only the subprocess calls run on worker threads; store access
        stays on the calling thread.
        """
        report = ClassificationReport()
        requests = {}
        for test_instance_id in test_instance_ids:
            try:
                requests[test_instance_id] = self.load_request(test_instance_id)
            except Exception as e:
                logger.error(f"Error loading lab test {test_instance_id} for classification: {e}")
                report.failed[test_instance_id] = str(e)
        if not requests:
            return report

        with ThreadPoolExecutor(max_workers=self.config.max_concurrency) as executor:
            futures = {executor.submit(self.invoke, request): request for request in requests.values()}
            for future in as_completed(futures):
                request = futures[future]
                try:
                    labels = self.apply(request, future.result())
                    report.classified.append(request.test_instance_id)
                    logger.info(f"Classified lab test {request.test_instance_id}: {labels}")
                except Exception as e:
                    logger.error(f"Error processing lab test {request.test_instance_id}: {e}")
                    report.failed[request.test_instance_id] = str(e)
        return report
