from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar, TypeAlias

from pairflow.errors import BatchAbortedError, ErrorKind


__all__ = [
    "BatchResponse",
    "BatchStatistics",
    "Err",
    "ErrorKind",
    "FilterResult",
    "Ok",
    "ProcessingResult",
    "SampleError",
]


@dataclass(frozen=True)
class Ok:
    value: object
    index: int

    ok: ClassVar[bool] = True

    def to_item(self) -> dict[str, object]:
        return {"json": self.value, "pairedItem": self.index}


@dataclass(frozen=True)
class Err:
    kind: str
    message: str
    index: int
    error_type: str | None = None
    source: str | None = None

    ok: ClassVar[bool] = False

    def to_item(self, record: Mapping[str, object] | None = None) -> dict[str, object]:
        # Failed items keep the original fields next to the error marker.
        payload: dict[str, object] = dict(record or {})
        payload["_error"] = {"type": str(self.kind), "message": self.message, "itemIndex": self.index}
        return {"json": payload, "pairedItem": self.index}


ProcessingResult: TypeAlias = Ok | Err


@dataclass(frozen=True)
class SampleError:
    kind: str
    message: str
    index: int


@dataclass(frozen=True)
class BatchStatistics:
    total: int
    successful: int
    failed: int
    success_rate: float
    failure_rate: float
    error_breakdown: dict[str, int] = field(default_factory=dict)
    sample_errors: tuple[SampleError, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "failure_rate": self.failure_rate,
            "error_breakdown": dict(self.error_breakdown),
            "sample_errors": [
                {"kind": str(sample.kind), "message": sample.message, "index": sample.index}
                for sample in self.sample_errors
            ],
        }


@dataclass(frozen=True)
class BatchResponse:
    """Outcome of one batch run.

    ``results`` holds one entry per input in input order when the batch is
    paired. With ``paired`` false the failed entries are left out of
    ``results`` and positions no longer line up with the inputs. ``errors``
    always lists every failure and ``stats`` covers every processed item.
    ``stopped_by`` is the failure that cut a stop-on-error run short; the
    results are then a prefix of the inputs. A later retry may recover that
    item, but the skipped items stay unprocessed and the batch stays aborted.
    """

    results: list[ProcessingResult]
    stats: BatchStatistics
    errors: list[Err] = field(default_factory=list)
    stopped_by: Err | None = None
    paired: bool = True

    @property
    def aborted(self) -> bool:
        return self.stopped_by is not None

    @property
    def values(self) -> list[object]:
        return [result.value for result in self.results if isinstance(result, Ok)]

    def to_items(self, records: Sequence[Mapping[str, object]] | None = None) -> list[dict[str, object]]:
        """Render results as platform items; failed items merge their input record when given."""
        items = []
        for result in self.results:
            if isinstance(result, Err):
                items.append(result.to_item(records[result.index] if records is not None else None))
            else:
                items.append(result.to_item())
        return items

    def raise_for_abort(self) -> None:
        if self.stopped_by is None:
            return
        raise BatchAbortedError(self.stopped_by.index, str(self.stopped_by.kind), self.stopped_by.message)


@dataclass(frozen=True)
class FilterResult:
    response: BatchResponse
    total_items: int
    filtered_count: int

    @property
    def processed_count(self) -> int:
        return len(self.response.results)

    @property
    def filter_rate(self) -> float:
        if self.total_items == 0:
            return 0.0
        return self.filtered_count / self.total_items
