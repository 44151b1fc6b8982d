from collections import Counter
from collections.abc import Sequence

from pairflow.schemas import BatchStatistics, Err, ProcessingResult, SampleError


DEFAULT_SAMPLE_LIMIT = 5


def summarize(results: Sequence[ProcessingResult], *, sample_limit: int = DEFAULT_SAMPLE_LIMIT) -> BatchStatistics:
    total = len(results)
    errors = [result for result in results if isinstance(result, Err)]
    failed = len(errors)
    successful = total - failed

    # An empty batch counts as fully successful.
    success_rate = successful / total if total else 1.0
    breakdown = Counter(str(error.kind) for error in errors)

    return BatchStatistics(
        total=total,
        successful=successful,
        failed=failed,
        success_rate=success_rate,
        failure_rate=1.0 - success_rate,
        error_breakdown=dict(breakdown),
        sample_errors=tuple(
            SampleError(kind=str(error.kind), message=error.message, index=error.index)
            for error in errors[: max(sample_limit, 0)]
        ),
    )
