import json
import os
from pathlib import Path
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["INPUT_DIR"] = str(tmp_path / "data" / "input")
    env["OUTPUT_DIR"] = str(tmp_path / "outputs")
    env["LOG_ERRORS"] = "false"
    env["RETRY_ATTEMPTS"] = "0"
    return env


def _run(tmp_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "pairflow.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=_base_env(tmp_path),
        check=False,
        capture_output=True,
        text=True,
    )


def _write_jsonl(path: Path, rows: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row))
            outfile.write("\n")


def test_cli_writes_results_dead_letters_and_report(tmp_path: Path, feed_items) -> None:
    _write_jsonl(tmp_path / "data" / "input" / "feed.jsonl", feed_items)

    proc = _run(tmp_path, "run", "--node", "podcast-episodes", "--input", "feed.jsonl", "--run-key", "feed-1")

    assert proc.returncode == 0
    assert "total=3 successful=2 failed=1 aborted=False" in proc.stdout

    outputs = tmp_path / "outputs"
    results = [json.loads(line) for line in (outputs / "results" / "feed-1.jsonl").read_text().splitlines()]
    assert [row["pairedItem"] for row in results] == [0, 1, 2]
    assert results[2]["json"]["_error"]["type"] == "validation_error"
    assert results[2]["json"]["guid"] == "ep-3"

    dead_letters = (outputs / "dead-letter" / "feed-1.jsonl").read_text().splitlines()
    assert len(dead_letters) == 1

    report = json.loads((outputs / "reports" / "feed-1.json").read_text())
    assert report["stats"]["failed"] == 1
    assert report["paired"] is True


def test_cli_returns_nonzero_when_batch_aborts(tmp_path: Path, feed_items) -> None:
    rows = [feed_items[2], feed_items[0], feed_items[1]]
    _write_jsonl(tmp_path / "data" / "input" / "feed.jsonl", rows)

    proc = _run(
        tmp_path,
        "run",
        "--node",
        "podcast-episodes",
        "--input",
        "feed.jsonl",
        "--run-key",
        "feed-2",
        "--stop-on-error",
    )

    assert proc.returncode == 1
    assert "total=1 successful=0 failed=1 aborted=True" in proc.stdout


def test_cli_reads_sibling_sources(tmp_path: Path) -> None:
    input_dir = tmp_path / "data" / "input"
    _write_jsonl(input_dir / "episodes.jsonl", [{"episodeGuid": "ep-1", "title": "Pilot"}, {"title": "Second"}])
    _write_jsonl(input_dir / "sources.jsonl", [{"knowledgeSourceId": "ks-1"}])

    proc = _run(
        tmp_path,
        "run",
        "--node",
        "podcast-exists",
        "--input",
        "episodes.jsonl",
        "--sibling",
        "Ingestion Sources=sources.jsonl",
        "--run-key",
        "exists-1",
    )

    assert proc.returncode == 0
    assert "total=2 successful=1 failed=1" in proc.stdout


def test_cli_reports_missing_input(tmp_path: Path) -> None:
    proc = _run(tmp_path, "run", "--node", "podcast-episodes", "--input", "missing.jsonl")

    assert proc.returncode == 2
    assert "input file not found" in proc.stdout


def test_cli_lists_nodes(tmp_path: Path) -> None:
    proc = _run(tmp_path, "nodes")

    assert proc.returncode == 0
    assert "podcast-exists\tsiblings=Ingestion Sources" in proc.stdout
