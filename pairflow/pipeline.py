import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import replace
import inspect
import logging

from pairflow.config import BatchConfig
from pairflow.errors import ErrorKind, SiblingResolutionError, error_kind_for
from pairflow.retry import RetryExhaustedError, run_with_retries
from pairflow.schemas import BatchResponse, Err, FilterResult, Ok, ProcessingResult
from pairflow.siblings import SiblingResolver, SiblingSource
from pairflow.stats import summarize


logger = logging.getLogger(__name__)

Record = Mapping[str, object]
Transform = Callable[[Record, int, Mapping[str, object]], object]
AsyncTransform = Callable[[Record, int, Mapping[str, object]], object | Awaitable[object]]
ConfigLike = BatchConfig | Mapping[str, object] | None


class _ItemFailed(Exception):
    def __init__(self, result: Err) -> None:
        super().__init__(result.message)
        self.result = result


def _coerce_config(config: ConfigLike) -> BatchConfig:
    if config is None:
        return BatchConfig()
    if isinstance(config, BatchConfig):
        return config
    if isinstance(config, Mapping):
        return BatchConfig.from_options(config)
    raise TypeError("config must be a BatchConfig or a mapping of options")


def _coerce_inputs(inputs: Iterable[Record]) -> list[Record]:
    if isinstance(inputs, (str, bytes, Mapping)) or not isinstance(inputs, Iterable):
        raise TypeError("inputs must be an ordered collection of records")
    return list(inputs)


def _require_callable(fn: object, what: str) -> None:
    if not callable(fn):
        raise TypeError(f"{what} must be callable")


def _error_result(exc: Exception, index: int) -> Err:
    return Err(
        kind=error_kind_for(exc),
        message=str(exc) or type(exc).__name__,
        index=index,
        error_type=type(exc).__name__,
        source=exc.source if isinstance(exc, SiblingResolutionError) else None,
    )


def _wrap(value: object, index: int) -> ProcessingResult:
    # Transforms may return a ready envelope instead of raising.
    if isinstance(value, (Ok, Err)):
        return value if value.index == index else replace(value, index=index)
    return Ok(value=value, index=index)


def _process_one(record: Record, index: int, transform: Transform, resolver: SiblingResolver) -> ProcessingResult:
    try:
        siblings = resolver.resolve_all(index)
        value = transform(record, index, siblings)
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            raise TypeError("transform returned an awaitable; use process_items_async")
        return _wrap(value, index)
    except Exception as exc:
        return _error_result(exc, index)


async def _process_one_async(
    record: Record,
    index: int,
    transform: AsyncTransform,
    resolver: SiblingResolver,
) -> ProcessingResult:
    try:
        siblings = await resolver.resolve_all_async(index)
        value = transform(record, index, siblings)
        if inspect.isawaitable(value):
            value = await value
        return _wrap(value, index)
    except Exception as exc:
        return _error_result(exc, index)


def _log_error(error: Err) -> None:
    logger.error(
        "item %s failed with %s: %s",
        error.index,
        error.kind,
        error.message,
        extra={"item_index": error.index, "error_kind": str(error.kind), "sibling_source": error.source},
    )


def _finish(results: Sequence[ProcessingResult], config: BatchConfig, *, stopped_by: Err | None = None) -> BatchResponse:
    errors = [result for result in results if isinstance(result, Err)]
    if config.log_errors:
        for error in errors:
            _log_error(error)

    stats = summarize(results, sample_limit=config.sample_error_limit)
    visible = list(results) if config.maintain_pairing else [result for result in results if isinstance(result, Ok)]

    logger.debug(
        "batch processed",
        extra={"total": stats.total, "failed": stats.failed, "aborted": stopped_by is not None},
    )
    return BatchResponse(
        results=visible,
        stats=stats,
        errors=errors,
        stopped_by=stopped_by,
        paired=config.maintain_pairing,
    )


def _run_sequential(
    indexed: Sequence[tuple[int, Record]],
    transform: Transform,
    resolver: SiblingResolver,
    config: BatchConfig,
) -> BatchResponse:
    results: list[ProcessingResult] = []
    for index, record in indexed:
        result = _process_one(record, index, transform, resolver)
        results.append(result)
        if isinstance(result, Err) and config.stop_on_error:
            # A failure on the last item skips nothing, so it is not an abort.
            return _finish(results, config, stopped_by=result if len(results) < len(indexed) else None)
    return _finish(results, config)


async def _run_async(
    indexed: Sequence[tuple[int, Record]],
    transform: AsyncTransform,
    resolver: SiblingResolver,
    config: BatchConfig,
) -> BatchResponse:
    if config.concurrency == 1:
        results: list[ProcessingResult] = []
        for index, record in indexed:
            result = await _process_one_async(record, index, transform, resolver)
            results.append(result)
            if isinstance(result, Err) and config.stop_on_error:
                return _finish(results, config, stopped_by=result if len(results) < len(indexed) else None)
        return _finish(results, config)

    semaphore = asyncio.Semaphore(config.concurrency)
    slots: list[ProcessingResult | None] = [None] * len(indexed)
    first_failure: int | None = None

    async def run_slot(position: int, index: int, record: Record) -> None:
        nonlocal first_failure
        async with semaphore:
            # Items past a recorded failure are skipped; earlier ones always run.
            if first_failure is not None and position > first_failure:
                return
            result = await _process_one_async(record, index, transform, resolver)
        slots[position] = result
        if isinstance(result, Err) and config.stop_on_error:
            if first_failure is None or position < first_failure:
                first_failure = position

    await asyncio.gather(*(run_slot(position, index, record) for position, (index, record) in enumerate(indexed)))

    if first_failure is None or first_failure == len(slots) - 1:
        return _finish([slot for slot in slots if slot is not None], config)
    ordered = [slot for slot in slots[: first_failure + 1] if slot is not None]
    return _finish(ordered, config, stopped_by=slots[first_failure])


class BatchProcessor:
    """Binds sibling sources and options once for every batch a node runs.

    The module level functions build a throwaway processor per call.
    """

    def __init__(
        self,
        sibling_sources: Mapping[str, SiblingSource] | None = None,
        config: ConfigLike = None,
    ) -> None:
        self.resolver = SiblingResolver(sibling_sources)
        self.config = _coerce_config(config)

    def process(self, inputs: Iterable[Record], transform: Transform) -> BatchResponse:
        records = _coerce_inputs(inputs)
        _require_callable(transform, "transform")
        return _run_sequential(list(enumerate(records)), transform, self.resolver, self.config)

    async def process_async(self, inputs: Iterable[Record], transform: AsyncTransform) -> BatchResponse:
        records = _coerce_inputs(inputs)
        _require_callable(transform, "transform")
        return await _run_async(list(enumerate(records)), transform, self.resolver, self.config)

    def filter_and_process(
        self,
        inputs: Iterable[Record],
        predicate: Callable[[Record], bool],
        transform: Transform,
    ) -> FilterResult:
        records = _coerce_inputs(inputs)
        _require_callable(predicate, "predicate")
        _require_callable(transform, "transform")

        # Selected records keep their original index for transforms and sibling lookups.
        selected = [(index, record) for index, record in enumerate(records) if predicate(record)]
        response = _run_sequential(selected, transform, self.resolver, self.config)
        return FilterResult(response=response, total_items=len(records), filtered_count=len(selected))

    def retry_failed(
        self,
        response: BatchResponse,
        inputs: Sequence[Record],
        transform: Transform,
        *,
        attempts: int = 1,
        backoff_seconds: float = 0.0,
    ) -> BatchResponse:
        """Re-run the failed positions of a paired batch in place.

        Each failed item gets up to ``attempts`` further tries. Validation
        failures are deterministic and are not tried again. Items that keep
        failing keep their latest error. A batch cut short by stop-on-error
        stays aborted: items after the cutoff are never run here.
        """
        if not response.paired:
            raise ValueError("cannot retry an unpaired batch: failed items were dropped")
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        if not response.errors:
            return response

        records = _coerce_inputs(inputs)
        _require_callable(transform, "transform")

        results = list(response.results)
        recovered = 0
        for position, result in enumerate(results):
            if not isinstance(result, Err) or result.kind == ErrorKind.VALIDATION:
                continue

            def attempt_once(attempt: int, record: Record = records[result.index], index: int = result.index):
                outcome = _process_one(record, index, transform, self.resolver)
                if isinstance(outcome, Err):
                    raise _ItemFailed(outcome)
                return outcome

            try:
                results[position] = run_with_retries(
                    attempt_once,
                    max_retries=attempts - 1,
                    backoff_seconds=backoff_seconds,
                    should_retry=lambda exc: exc.result.kind != ErrorKind.VALIDATION,
                )
                recovered += 1
            except RetryExhaustedError as exc:
                cause = exc.__cause__
                if not isinstance(cause, _ItemFailed):
                    raise
                results[position] = cause.result
                if self.config.log_errors:
                    _log_error(cause.result)

        logger.info(
            "retried failed items",
            extra={"failed": len(response.errors), "recovered": recovered},
        )
        # Earlier failures were logged by the original run. Skipped items stay unprocessed.
        config = replace(self.config, maintain_pairing=True, log_errors=False)
        return _finish(results, config, stopped_by=response.stopped_by)


def process_items(
    inputs: Iterable[Record],
    transform: Transform,
    sibling_sources: Mapping[str, SiblingSource] | None = None,
    config: ConfigLike = None,
) -> BatchResponse:
    """Apply ``transform`` to every record, one result per input, in order.

    ``transform`` is called as ``transform(record, index, siblings)`` where
    ``siblings`` maps each registered source name to the value that source
    holds at ``index`` (or ``ABSENT``). Failures are captured per item as
    ``Err`` results; nothing raised by a transform or a source escapes.

    With ``stop_on_error`` the batch stops right after the first failure and
    ``results`` is a prefix of the inputs. Such a batch is never resumed.
    """
    return BatchProcessor(sibling_sources, config).process(inputs, transform)


async def process_items_async(
    inputs: Iterable[Record],
    transform: AsyncTransform,
    sibling_sources: Mapping[str, SiblingSource] | None = None,
    config: ConfigLike = None,
) -> BatchResponse:
    """Async variant of :func:`process_items`.

    Transforms and sibling sources may return awaitables. With
    ``config.concurrency`` above 1 up to that many items run at once; results
    still come back in input order and a failing item never cancels others.
    """
    return await BatchProcessor(sibling_sources, config).process_async(inputs, transform)


def filter_and_process(
    inputs: Iterable[Record],
    predicate: Callable[[Record], bool],
    transform: Transform,
    sibling_sources: Mapping[str, SiblingSource] | None = None,
    config: ConfigLike = None,
) -> FilterResult:
    return BatchProcessor(sibling_sources, config).filter_and_process(inputs, predicate, transform)


def retry_failed_items(
    response: BatchResponse,
    inputs: Sequence[Record],
    transform: Transform,
    sibling_sources: Mapping[str, SiblingSource] | None = None,
    *,
    attempts: int = 1,
    backoff_seconds: float = 0.0,
    config: ConfigLike = None,
) -> BatchResponse:
    return BatchProcessor(sibling_sources, config).retry_failed(
        response,
        inputs,
        transform,
        attempts=attempts,
        backoff_seconds=backoff_seconds,
    )
