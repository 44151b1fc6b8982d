from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import html
import re
from urllib.parse import urlparse

from pairflow.errors import ValidationError, require_fields
from pairflow.siblings import ABSENT


INGESTION_SOURCES = "Ingestion Sources"

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class NodeSpec:
    transform: Callable[[Mapping[str, object], int, Mapping[str, object]], object]
    siblings: tuple[str, ...] = ()
    description: str = ""


def _lookup(obj: Mapping[str, object], path: str) -> object:
    # Feed parsers emit both flat "itunes:duration" keys and nested "itunes" objects.
    if path in obj:
        return obj[path]
    current: object = obj
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _first_present(obj: Mapping[str, object], paths: list[str], default: object = None) -> object:
    for path in paths:
        value = _lookup(obj, path)
        if value not in (None, ""):
            return value
    return default


def _clean_text(value: object) -> str:
    if value is None:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", str(value)))
    return _SPACE_RE.sub(" ", text).strip()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    cut = text[:limit]
    if " " in cut:
        cut = cut[: cut.rindex(" ")]
    return cut.rstrip()


def _valid_url(value: object) -> str | None:
    if not value:
        return None
    candidate = str(value).strip()
    parsed = urlparse(candidate)
    if parsed.scheme in {"http", "https"} and parsed.netloc:
        return candidate
    return None


def parse_duration(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else None

    text = str(value).strip()
    if text.isdigit():
        return int(text)

    parts = text.split(":")
    if not 2 <= len(parts) <= 3 or not all(part.isdigit() for part in parts):
        return None
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return seconds


def normalize_episode(record: Mapping[str, object], index: int, siblings: Mapping[str, object]) -> dict[str, object]:
    audio_url = _valid_url(_lookup(record, "enclosure.url") or record.get("link"))
    episode: dict[str, object] = {
        "episodeGuid": record.get("guid") or record.get("id") or None,
        "title": _truncate(_clean_text(record.get("title")), 250),
        "publicationDate": record.get("isoDate") or record.get("pubDate") or None,
        "audioUrl": audio_url,
        "description": _truncate(
            _clean_text(_first_present(record, ["content", "content:encoded", "contentSnippet", "itunes.summary"], "")),
            4000,
        ),
        "author": str(_first_present(record, ["itunes.author", "dc:creator", "author", "creator"], "Unknown")),
        "duration": parse_duration(_first_present(record, ["itunes.duration", "itunes:duration"])),
        "audioFileType": _lookup(record, "enclosure.type") or "audio/mpeg",
        "episodeLink": _valid_url(record.get("link")),
    }

    require_fields(episode, ("title", "audioUrl"))

    episode["processingMetadata"] = {
        "normalizedAt": datetime.now(UTC).isoformat(),
        "itemIndex": index,
        "hasDescription": bool(episode["description"]),
        "hasDuration": episode["duration"] is not None,
    }
    return episode


EPISODE_EXISTS_SQL = """
SELECT CASE
  WHEN EXISTS (
    SELECT KnowledgeSourceInstanceId
    FROM KnowledgeSourceInstances
    WHERE KnowledgeSourceId = @KnowledgeSourceId
      AND SourceId = @EpisodeGuid
  )
  THEN 1
  WHEN EXISTS (
    SELECT KnowledgeSourceInstanceId
    FROM KnowledgeSourceInstances
    WHERE Name = @EpisodeTitle
      AND SourceDate = @PublicationDate
      AND KnowledgeSourceId = @KnowledgeSourceId
  )
  THEN 1
  ELSE 0
END AS episode_exists
""".strip()


def episode_exists_query(record: Mapping[str, object], index: int, siblings: Mapping[str, object]) -> dict[str, object]:
    source = siblings.get(INGESTION_SOURCES, ABSENT)
    if source is ABSENT or not isinstance(source, Mapping) or not source.get("knowledgeSourceId"):
        raise ValidationError(
            f"Missing knowledgeSourceId from {INGESTION_SOURCES} for item {index}",
            missing_fields=["knowledgeSourceId"],
        )

    guid = record.get("episodeGuid")
    title = record.get("title")
    if not guid and not title:
        raise ValidationError(
            f"Missing both episodeGuid and title for item {index}",
            missing_fields=["episodeGuid", "title"],
        )

    return {
        "query": EPISODE_EXISTS_SQL,
        "parameters": {
            "KnowledgeSourceId": source["knowledgeSourceId"],
            "EpisodeGuid": guid,
            "EpisodeTitle": title,
            "PublicationDate": record.get("publicationDate"),
        },
        "metadata": {
            "checkType": "podcast_episode_existence",
            "primaryCheck": "guid" if guid else "title_date",
            "itemIndex": index,
        },
    }


NODES: dict[str, NodeSpec] = {
    "podcast-episodes": NodeSpec(
        transform=normalize_episode,
        description="normalize raw podcast feed items",
    ),
    "podcast-exists": NodeSpec(
        transform=episode_exists_query,
        siblings=(INGESTION_SOURCES,),
        description="build episode existence checks against the ingestion source",
    ),
}
