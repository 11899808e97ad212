# ot_allocation/exceptions.py
from typing import Any, Dict, List, Optional

from fastapi import status


class OTEngineError(Exception):
    """Base class for every request-scoped failure raised by the engine."""
    code = "OTEngineError"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, slot_ids: Optional[List[int]] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.slot_ids = list(slot_ids or [])
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": False,
            "error": self.code,
            "message": self.message,
            "field": self.field,
            "slot_ids": self.slot_ids,
        }
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationError(OTEngineError):
    code = "ValidationError"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class MissingRequiredField(ValidationError):
    code = "MissingRequiredField"


class InvalidStatusTransition(ValidationError):
    code = "InvalidStatusTransition"


class PatientSourceMissing(ValidationError):
    code = "PatientSourceMissing"


class AmbiguousPatientSource(ValidationError):
    code = "AmbiguousPatientSource"


class PatientSourceUnresolvable(ValidationError):
    code = "PatientSourceUnresolvable"


class SlotConflict(OTEngineError):
    code = "SlotConflict"
    status_code = status.HTTP_409_CONFLICT


class NotFound(OTEngineError):
    code = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class DependencyUnavailable(OTEngineError):
    code = "DependencyUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
