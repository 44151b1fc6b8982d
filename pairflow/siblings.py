import inspect
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Final

from pairflow.errors import SiblingResolutionError


class _Absent:
    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


# A sibling collection may legitimately be shorter than the primary batch.
ABSENT: Final = _Absent()

SiblingSource = Callable[[int], object]


def to_camel_case(name: str) -> str:
    words = [word for word in re.split(r"[\W_]+", name) if word]
    if not words:
        return ""
    head, *rest = words
    return head.lower() + "".join(word[:1].upper() + word[1:].lower() for word in rest)


def rows_source(rows: Sequence[object]) -> SiblingSource:
    """Build a position-aligned source over already fetched rows.

    Rows shaped like platform items (``{"json": {...}}``) are unwrapped.
    """
    frozen = tuple(rows)

    def lookup(index: int) -> object:
        if index < 0 or index >= len(frozen):
            return ABSENT
        row = frozen[index]
        if isinstance(row, Mapping) and set(row) <= {"json", "pairedItem", "binary"} and "json" in row:
            return row["json"]
        return row

    return lookup


class SiblingResolver:
    def __init__(self, sources: Mapping[str, SiblingSource] | None = None) -> None:
        sources = {} if sources is None else sources
        if not isinstance(sources, Mapping):
            raise TypeError("sibling sources must be a mapping of source name to lookup function")
        for name, source in sources.items():
            if not callable(source):
                raise TypeError(f"sibling source '{name}' must be callable")
        self._sources: dict[str, SiblingSource] = dict(sources)

    @property
    def names(self) -> list[str]:
        return list(self._sources)

    def resolve(self, name: str, index: int) -> object:
        source = self._sources[name]
        try:
            return source(index)
        except Exception as exc:
            raise SiblingResolutionError(name, index, str(exc)) from exc

    async def resolve_async(self, name: str, index: int) -> object:
        source = self._sources[name]
        try:
            value = source(index)
            if inspect.isawaitable(value):
                value = await value
            return value
        except Exception as exc:
            raise SiblingResolutionError(name, index, str(exc)) from exc

    def resolve_all(self, index: int, *, camel_case: bool = False) -> dict[str, object]:
        resolved: dict[str, object] = {}
        for name in self._sources:
            key = to_camel_case(name) if camel_case else name
            resolved[key] = self.resolve(name, index)
        return resolved

    async def resolve_all_async(self, index: int, *, camel_case: bool = False) -> dict[str, object]:
        resolved: dict[str, object] = {}
        for name in self._sources:
            key = to_camel_case(name) if camel_case else name
            resolved[key] = await self.resolve_async(name, index)
        return resolved

    def check_availability(self, index: int) -> dict[str, str]:
        status: dict[str, str] = {}
        for name, source in self._sources.items():
            try:
                value = source(index)
            except Exception as exc:
                status[name] = f"error: {exc}"
                continue
            status[name] = "absent" if value is ABSENT else "ok"
        return status
