"""
Exception hierarchy for the lab result pipeline.

Every error carries a machine-readable code and a details dict so the API
can turn it into a structured response instead of a stack trace.
"""
from typing import Optional, Dict, Any, List


class LabPipelineError(Exception):
    """Base exception for all pipeline errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class FileFormatError(LabPipelineError):
    """Uploaded file is missing, unreadable or of an unsupported type."""

    status_code = 400

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(
            message=message,
            code="FILE_FORMAT_ERROR",
            details={"filename": filename}
        )
        self.filename = filename


class NoDataError(LabPipelineError):
    """Uploaded file has no data rows."""

    status_code = 400

    def __init__(self, message: str = "No data found in file"):
        super().__init__(message=message, code="NO_DATA")


class RowValidationError(LabPipelineError):
    """Every row of the uploaded file failed validation."""

    status_code = 400

    def __init__(self, message: str, errors: List[str]):
        super().__init__(
            message=message,
            code="ROW_VALIDATION_ERROR",
            details={"errors": errors}
        )
        self.errors = errors


class ClassifierError(LabPipelineError):
    """External classifier failed, timed out or returned garbage."""

    def __init__(
        self,
        message: str,
        test_instance_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="CLASSIFIER_ERROR",
            details={"test_instance_id": test_instance_id, **(details or {})}
        )
        self.test_instance_id = test_instance_id


class TextGenerationError(LabPipelineError):
    """External text-generation service failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code="TEXT_GENERATION_ERROR",
            details=details
        )


class NoDataForDateError(LabPipelineError):
    """No measurements recorded for a patient on a test date."""

    status_code = 404

    def __init__(self, patient_number: str, test_date):
        super().__init__(
            message=f"No lab results found for patient {patient_number} on {test_date}",
            code="NO_DATA_FOR_DATE",
            details={"patient_number": patient_number, "test_date": str(test_date)}
        )


class BatchRejectedError(LabPipelineError):
    """A submitted batch was skipped or rolled back."""

    status_code = 422

    def __init__(self, message: str, warnings: List[str]):
        super().__init__(
            message=message,
            code="BATCH_REJECTED",
            details={"warnings": warnings}
        )


class NotFoundError(LabPipelineError):
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} {identifier} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": identifier}
        )


class RecommendationStateError(LabPipelineError):
    """Requested recommendation status change is not allowed."""

    status_code = 409

    def __init__(self, recommendation_id: int, current: str, requested: str):
        super().__init__(
            message=f"Recommendation {recommendation_id} cannot go from '{current}' to '{requested}'",
            code="INVALID_STATE",
            details={
                "recommendation_id": recommendation_id,
                "current_status": current,
                "requested_status": requested
            }
        )
