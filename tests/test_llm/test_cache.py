"""Tests for the on-disk response cache."""

from __future__ import annotations

from pathlib import Path

import pytest

from buildmend.core.models import BuildError, ChangeKind, ErrorCategory, FileChange, FixResult, SearchReplace
from buildmend.llm.cache import ResponseCache, cache_key, normalize_message


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path: Path, clock: FakeClock) -> ResponseCache:
    return ResponseCache(tmp_path, max_age_seconds=3600, clock=clock)


def _make_error(message: str = "Object is possibly 'undefined'.", line: int = 12) -> BuildError:
    return BuildError(ErrorCategory.TYPESCRIPT, message, file="src/app/user.ts", line=line, code="TS2532")


def _make_result() -> FixResult:
    return FixResult(
        success=True,
        changes=[FileChange(
            file="src/app/user.ts",
            kind=ChangeKind.MODIFY,
            search_replace=[SearchReplace(search="a.b", replace="a?.b")],
        )],
        reasoning="Use optional chaining",
        confidence=0.85,
        source="llm",
    )


class TestResponseCache:
    def test_miss_then_hit(self, cache: ResponseCache):
        error = _make_error()
        assert cache.get(error, "ctx") is None

        cache.set(error, "ctx", _make_result())
        cached = cache.get(error, "ctx")

        assert cached is not None
        assert cached.from_cache is True
        assert cached.source == "llm"
        assert cached.changes[0].search_replace[0].replace == "a?.b"

    def test_different_context_misses(self, cache: ResponseCache):
        cache.set(_make_error(), "ctx", _make_result())
        assert cache.get(_make_error(), "other context") is None

    def test_expired_entry_is_deleted(self, cache: ResponseCache, clock: FakeClock):
        error = _make_error()
        cache.set(error, "ctx", _make_result())

        clock.now += 3601
        assert cache.get(error, "ctx") is None
        assert list(cache.cache_dir.glob("*.json")) == []

    def test_unreadable_entry_is_a_miss(self, cache: ResponseCache):
        error = _make_error()
        cache.set(error, "ctx", _make_result())
        (cache.cache_dir / f"{cache_key(error, 'ctx')}.json").write_text("{not json")

        assert cache.get(error, "ctx") is None

    def test_disabled_cache_is_inert(self, tmp_path: Path):
        cache = ResponseCache(tmp_path, enabled=False)
        cache.set(_make_error(), "ctx", _make_result())

        assert cache.get(_make_error(), "ctx") is None
        assert not cache.cache_dir.exists()

    def test_clear_and_stats(self, cache: ResponseCache):
        cache.set(_make_error(line=1), "ctx", _make_result())
        cache.set(_make_error(line=2), "ctx", _make_result())

        info = cache.stats()
        assert info.entries == 2
        assert info.size > 0
        assert info.oldest is not None

        assert cache.clear() == 2
        assert cache.stats().entries == 0
        assert (cache.cache_dir / ".gitignore").exists()


class TestKeys:
    def test_positions_in_message_are_masked(self):
        assert normalize_message("Unexpected token at line 12, column 4") == "Unexpected token at line X, column Y"
        assert normalize_message("src/a.ts:3:20 - bad") == "src/a.ts:X:Y - bad"
        assert normalize_message("error (12, 5)") == "error (X,Y)"

    def test_same_error_moved_within_message_shares_key(self):
        a = _make_error("Unexpected token at line 12")
        b = _make_error("Unexpected token at line 40")
        assert cache_key(a, "ctx") == cache_key(b, "ctx")

    def test_context_beyond_limit_is_ignored(self):
        error = _make_error()
        base = "x" * 500
        assert cache_key(error, base + "tail one") == cache_key(error, base + "tail two")
