from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from record_fetcher.models import ResultMap, Segment, SelectionSet


def _segment(url: str) -> Segment:
    return Segment(index=1, url=url, size=10, duration_ms=1500)


def test_filename_comes_from_last_path_component() -> None:
    segment = _segment("https://cdn.example.com/live/record/1616-12:30:01.flv?expires=1&sign=x")

    assert segment.filename == "1616-12-30-01.flv"
    assert segment.remux_filename == "1616-12-30-01.ts"
    assert segment.duration_sec == 1.5


def test_filename_falls_back_to_url_hash() -> None:
    url = "https://cdn.example.com/?part=1"
    expected = hashlib.sha256(b"https://cdn.example.com/").hexdigest() + ".flv"

    assert _segment(url).filename == expected
    assert _segment(url).remux_filename == expected[:-4] + ".ts"


def test_explicit_selection_counts_and_resolves() -> None:
    selection = SelectionSet.of([4, 2, 2, 0, 9])

    assert selection.count() == 3
    assert selection.resolve(5) == [2, 4]
    assert not selection.contains(0)
    assert not selection.is_full(5)
    assert str(selection) == "2,4,9"


def test_all_selection_needs_a_total_to_count() -> None:
    selection = SelectionSet.all()

    with pytest.raises(ValueError):
        selection.count()
    assert selection.count(5) == 5
    assert selection.resolve(3) == [1, 2, 3]
    assert selection.is_full(3)
    assert str(selection) == "all"


def test_explicit_selection_covering_everything_is_full() -> None:
    assert SelectionSet.of([1, 2, 3]).is_full(3)
    assert not SelectionSet.all().is_full(0)


def test_result_map_orders_by_index() -> None:
    results = ResultMap()
    results.set(3, Path("c.ts"))
    results.set(1, Path("a.ts"))
    results.set(2, Path("b.ts"))

    assert len(results) == 3
    assert 2 in results
    assert results.get(4) is None
    assert results.ordered_paths() == [Path("a.ts"), Path("b.ts"), Path("c.ts")]
    assert results.snapshot() == {1: Path("a.ts"), 2: Path("b.ts"), 3: Path("c.ts")}
