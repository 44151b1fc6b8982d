import asyncio

import pytest

from pairflow.errors import SiblingResolutionError
from pairflow.siblings import ABSENT, SiblingResolver, rows_source, to_camel_case


def test_rows_source_returns_absent_past_the_end() -> None:
    source = rows_source([{"json": {"id": 1}, "pairedItem": 0}, {"id": 2}])

    assert source(0) == {"id": 1}
    assert source(1) == {"id": 2}
    assert source(2) is ABSENT
    assert source(-1) is ABSENT


def test_absent_is_falsy_singleton() -> None:
    assert not ABSENT
    assert repr(ABSENT) == "ABSENT"


def test_resolve_wraps_lookup_failures() -> None:
    def broken(index):
        raise KeyError("row")

    resolver = SiblingResolver({"Broken": broken, "Rows": rows_source(["a"])})

    assert resolver.resolve("Rows", 0) == "a"
    assert resolver.resolve("Rows", 5) is ABSENT
    with pytest.raises(SiblingResolutionError) as excinfo:
        resolver.resolve("Broken", 3)
    assert excinfo.value.source == "Broken"
    assert excinfo.value.index == 3
    assert isinstance(excinfo.value.__cause__, KeyError)


def test_unknown_source_name_is_a_key_error() -> None:
    with pytest.raises(KeyError):
        SiblingResolver({}).resolve("Missing", 0)


def test_resolve_all_can_use_camel_case_keys() -> None:
    resolver = SiblingResolver({"Ingestion Sources": rows_source([1]), "user_settings": rows_source([2])})

    assert resolver.resolve_all(0) == {"Ingestion Sources": 1, "user_settings": 2}
    assert resolver.resolve_all(0, camel_case=True) == {"ingestionSources": 1, "userSettings": 2}


def test_resolve_all_async_awaits_sources() -> None:
    async def remote(index):
        return index * 2

    resolver = SiblingResolver({"Remote": remote, "Local": lambda index: "local"})

    assert asyncio.run(resolver.resolve_all_async(4)) == {"Remote": 8, "Local": "local"}


def test_check_availability_reports_each_source() -> None:
    def broken(index):
        raise RuntimeError("timeout")

    resolver = SiblingResolver({"Rows": rows_source(["a"]), "Broken": broken})

    assert resolver.check_availability(0) == {"Rows": "ok", "Broken": "error: timeout"}
    assert resolver.check_availability(1) == {"Rows": "absent", "Broken": "error: timeout"}


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Ingestion Sources", "ingestionSources"),
        ("user_settings", "userSettings"),
        ("Check Podcast-Feed!", "checkPodcastFeed"),
        ("   ", ""),
    ],
)
def test_to_camel_case(name: str, expected: str) -> None:
    assert to_camel_case(name) == expected


def test_sources_must_be_callables_in_a_mapping() -> None:
    with pytest.raises(TypeError):
        SiblingResolver([("Rows", rows_source([]))])
    with pytest.raises(TypeError):
        SiblingResolver({"Rows": [1, 2]})
