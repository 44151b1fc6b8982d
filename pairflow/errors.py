from collections.abc import Iterable, Mapping
from enum import StrEnum


class ErrorKind(StrEnum):
    VALIDATION = "validation_error"
    SIBLING_RESOLUTION = "sibling_resolution_error"
    PROCESSING = "processing_error"


class PairflowError(Exception):
    kind: str = ErrorKind.PROCESSING


class ValidationError(PairflowError):
    """Raised by a transform when a record is missing or has malformed fields."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, missing_fields: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing_fields = tuple(missing_fields)


class SiblingResolutionError(PairflowError):
    kind = ErrorKind.SIBLING_RESOLUTION

    def __init__(self, source: str, index: int, reason: str) -> None:
        super().__init__(f"failed to resolve sibling source '{source}' for item {index}: {reason}")
        self.source = source
        self.index = index


class ProcessingError(PairflowError):
    kind = ErrorKind.PROCESSING


class BatchAbortedError(PairflowError):
    """Raised on request when a stop-on-error batch was cut short."""

    def __init__(self, index: int, kind: str, message: str) -> None:
        super().__init__(f"batch aborted at item {index} ({kind}): {message}")
        self.index = index
        self.error_kind = kind


def error_kind_for(exc: BaseException) -> str:
    kind = getattr(exc, "kind", None)
    if not isinstance(kind, str) or not kind:
        return ErrorKind.PROCESSING
    try:
        return ErrorKind(kind)
    except ValueError:
        # Transforms may tag their own kinds; keep them as given.
        return kind


def require_fields(record: Mapping[str, object], fields: Iterable[str]) -> None:
    missing = [field for field in fields if record.get(field) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing_fields=missing)
