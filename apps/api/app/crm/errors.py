from __future__ import annotations

from typing import Any

from fastapi import status


class CRMError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "crm_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else message


class ValidationError(CRMError):
    """Caller can recover by supplying more or different data."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class MissingRequiredFieldsError(ValidationError):
    code = "missing_required_fields"

    def __init__(self, missing: list[dict[str, str]]) -> None:
        keys = ", ".join(item["field_key"] for item in missing)
        super().__init__(f"missing required fields: {keys}", details=missing)
        self.missing = missing


class UnlockReasonRequiredError(ValidationError):
    code = "unlock_reason_required"

    def __init__(self) -> None:
        super().__init__("an unlock reason is required to move back to a previous stage")


class ConflictError(CRMError):
    """Retryable: the caller should reload and try again."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class FatalError(CRMError):
    status_code = status.HTTP_409_CONFLICT
    code = "fatal"


class RecordReadOnlyError(FatalError):
    code = "record_read_only"

    def __init__(self, entity_type: str) -> None:
        super().__init__(f"{entity_type} is in a terminal stage and can no longer be changed")
