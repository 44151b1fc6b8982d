from pathlib import Path

import pytest

from pairflow.config import Settings


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="pairflow",
        log_level="INFO",
        input_dir=str(temp_workspace / "data" / "input"),
        output_dir=str(temp_workspace / "outputs"),
        stop_on_error=False,
        maintain_pairing=True,
        log_errors=False,
        max_concurrency=1,
        retry_attempts=0,
        retry_backoff_seconds=0,
        sample_error_limit=5,
    )


@pytest.fixture()
def feed_items() -> list[dict[str, object]]:
    return [
        {
            "guid": "ep-1",
            "title": "<b>Pilot</b> &amp; intro",
            "isoDate": "2026-02-01T10:00:00.000Z",
            "enclosure": {"url": "https://cdn.example.com/ep1.mp3", "type": "audio/mpeg", "length": "1200"},
            "content": "<p>First   episode</p>",
            "itunes": {"author": "Grace Hopper", "duration": "01:02:03"},
        },
        {
            "guid": "ep-2",
            "title": "Second",
            "link": "https://example.com/ep2.mp3",
            "itunes": {"duration": "125"},
        },
        {
            "guid": "ep-3",
            "title": "",
            "enclosure": {"url": "not a url"},
        },
    ]
