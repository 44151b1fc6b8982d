import argparse
import asyncio
from dataclasses import replace
from datetime import UTC, datetime
import json
import logging
from pathlib import Path

from pairflow.config import BatchConfig, Settings, get_settings
from pairflow.nodes.podcast import NODES
from pairflow.pipeline import BatchProcessor
from pairflow.records import read_jsonl, write_json, write_jsonl
from pairflow.schemas import BatchResponse
from pairflow.siblings import SiblingSource, rows_source


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run workflow code nodes over a batch of records")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one node over a JSONL batch")
    run_parser.add_argument("--node", required=True, choices=sorted(NODES), help="Registered node to run")
    run_parser.add_argument("--input", required=True, help="JSONL batch, relative paths fall back to INPUT_DIR")
    run_parser.add_argument(
        "--sibling",
        action="append",
        default=[],
        metavar="NAME=FILE",
        help="Position-aligned sibling source rows, may be repeated",
    )
    run_parser.add_argument("--run-key", required=False, help="Name used for output files")
    run_parser.add_argument("--stop-on-error", action="store_true", default=None, help="stop at the first failed item")
    run_parser.add_argument(
        "--no-pairing",
        dest="maintain_pairing",
        action="store_false",
        default=None,
        help="drop failed items from the results file",
    )
    run_parser.add_argument("--retry-attempts", type=int, default=None, help="extra tries for failed items")
    run_parser.add_argument("--concurrency", type=int, default=None, help="items processed at once")

    subparsers.add_parser("nodes", help="list registered nodes")

    return parser.parse_args(argv)


def _resolve_input(settings: Settings, raw: str) -> Path:
    path = Path(raw)
    if path.is_absolute() or path.exists():
        return path
    return Path(settings.input_dir) / path


def _load_siblings(settings: Settings, specs: list[str]) -> dict[str, SiblingSource]:
    sources: dict[str, SiblingSource] = {}
    for spec in specs:
        name, sep, raw_path = spec.partition("=")
        if not sep or not name.strip() or not raw_path.strip():
            raise ValueError(f"sibling must look like NAME=FILE, got {spec!r}")
        sources[name.strip()] = rows_source(read_jsonl(_resolve_input(settings, raw_path.strip())))
    return sources


def _build_config(settings: Settings, args: argparse.Namespace) -> BatchConfig:
    config = BatchConfig.from_settings(settings)
    overrides: dict[str, object] = {}
    if args.stop_on_error is not None:
        overrides["stop_on_error"] = args.stop_on_error
    if args.maintain_pairing is not None:
        overrides["maintain_pairing"] = args.maintain_pairing
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    return replace(config, **overrides)  # type: ignore[arg-type]


def _publish_outputs(
    settings: Settings,
    *,
    run_key: str,
    node: str,
    input_path: Path,
    records: list[dict[str, object]],
    response: BatchResponse,
) -> Path:
    output_root = Path(settings.output_dir)
    results_path = output_root / "results" / f"{run_key}.jsonl"
    dead_letter_path = output_root / "dead-letter" / f"{run_key}.jsonl"
    report_path = output_root / "reports" / f"{run_key}.json"

    write_jsonl(results_path, response.to_items(records))
    write_jsonl(
        dead_letter_path,
        [
            {
                "record_index": error.index,
                "kind": str(error.kind),
                "reason": error.message,
                "record": records[error.index],
            }
            for error in response.errors
        ],
    )
    write_json(
        report_path,
        {
            "run_key": run_key,
            "node": node,
            "input": str(input_path),
            "aborted": response.aborted,
            "paired": response.paired,
            "stats": response.stats.as_dict(),
            "results_output": str(results_path),
            "dead_letter_output": str(dead_letter_path),
        },
    )
    return report_path


def run_node(settings: Settings, args: argparse.Namespace) -> int:
    spec = NODES[args.node]
    input_path = _resolve_input(settings, args.input)
    try:
        records = read_jsonl(input_path)
        siblings = _load_siblings(settings, args.sibling)
    except (FileNotFoundError, ValueError) as exc:
        # json.JSONDecodeError is a ValueError.
        logger.error("could not load batch input", extra={"node": args.node, "error": str(exc)})
        print(f"error: {exc}")
        return 2

    for name in spec.siblings:
        if name not in siblings:
            logger.warning("node sibling source not supplied", extra={"node": args.node, "sibling": name})

    config = _build_config(settings, args)
    processor = BatchProcessor(siblings, config)
    if config.concurrency > 1:
        response = asyncio.run(processor.process_async(records, spec.transform))
    else:
        response = processor.process(records, spec.transform)

    attempts = settings.retry_attempts if args.retry_attempts is None else args.retry_attempts
    if attempts > 0 and response.paired and response.errors:
        response = processor.retry_failed(
            response,
            records,
            spec.transform,
            attempts=attempts,
            backoff_seconds=settings.retry_backoff_seconds,
        )

    run_key = args.run_key or f"{args.node}-{datetime.now(UTC).date().isoformat()}"
    report_path = _publish_outputs(
        settings,
        run_key=run_key,
        node=args.node,
        input_path=input_path,
        records=records,
        response=response,
    )

    stats = response.stats
    print(
        "run_key={run_key} node={node} total={total} successful={successful} failed={failed} aborted={aborted} report={report}".format(
            run_key=run_key,
            node=args.node,
            total=stats.total,
            successful=stats.successful,
            failed=stats.failed,
            aborted=response.aborted,
            report=report_path,
        )
    )
    if stats.failed:
        print("error_breakdown=" + json.dumps(stats.error_breakdown, sort_keys=True))
    return 1 if response.aborted else 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "nodes":
        for name in sorted(NODES):
            spec = NODES[name]
            siblings = ", ".join(spec.siblings) or "-"
            print(f"{name}\tsiblings={siblings}\t{spec.description}")
        return

    exit_code = run_node(settings, args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
