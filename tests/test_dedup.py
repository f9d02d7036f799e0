"""Tests for the deduplication cache."""

import logging
import threading

import pytest

from scriptwatch.daemon.dedup import DedupCache


def test_check_and_mark_only_once_per_version():
    cache = DedupCache(capacity=10)

    assert cache.check_and_mark("left-pad", "1.0.0")
    assert not cache.check_and_mark("left-pad", "1.0.0")
    assert cache.check_and_mark("left-pad", "1.0.1")
    assert cache.seen("left-pad") == "1.0.1"


def test_mark_seen_and_size():
    cache = DedupCache(capacity=10)
    cache.mark_seen("a", "1.0.0")
    cache.mark_seen("b", "2.0.0")
    cache.mark_seen("a", "1.0.1")

    assert cache.size() == 2
    assert len(cache) == 2
    assert cache.seen("a") == "1.0.1"
    assert cache.seen("missing") is None


def test_claim_detection_once():
    cache = DedupCache()

    assert cache.claim_detection("evil@2.0.0")
    assert not cache.claim_detection("evil@2.0.0")
    assert cache.is_flagged("evil@2.0.0")


def test_release_undoes_claim():
    cache = DedupCache()
    cache.check_and_mark("evil", "2.0.0")
    cache.claim_detection("evil@2.0.0")

    cache.release("evil", "2.0.0", "evil@2.0.0")

    assert cache.seen("evil") is None
    assert not cache.is_flagged("evil@2.0.0")
    assert cache.check_and_mark("evil", "2.0.0")


def test_release_keeps_newer_pointer():
    cache = DedupCache()
    cache.check_and_mark("pkg", "1.0.0")
    cache.check_and_mark("pkg", "1.0.1")

    cache.release("pkg", "1.0.0")

    assert cache.seen("pkg") == "1.0.1"


def test_overflow_resets_cache(caplog):
    cache = DedupCache(capacity=3)
    for i in range(3):
        cache.check_and_mark(f"pkg-{i}", "1.0.0")
    assert cache.size() == 3
    assert cache.generation == 0

    with caplog.at_level(logging.WARNING):
        cache.check_and_mark("pkg-3", "1.0.0")

    assert cache.size() == 0
    assert cache.generation == 1
    assert "cleared cache" in caplog.text
    # Forgotten packages are evaluated again
    assert cache.check_and_mark("pkg-0", "1.0.0")


def test_reset_if_overflow_explicit_capacity():
    cache = DedupCache(capacity=100)
    for i in range(5):
        cache.mark_seen(f"pkg-{i}", "1.0.0")

    assert not cache.reset_if_overflow()
    assert cache.reset_if_overflow(capacity=4)
    assert cache.size() == 0


def test_clear_starts_new_generation():
    cache = DedupCache()
    cache.check_and_mark("a", "1")
    cache.claim_detection("a@1")

    cache.clear()

    assert cache.size() == 0
    assert not cache.is_flagged("a@1")
    assert cache.generation == 1


def test_invalid_capacity():
    with pytest.raises(ValueError):
        DedupCache(capacity=0)


def test_concurrent_check_and_mark_single_winner():
    cache = DedupCache()
    wins = []
    barrier = threading.Barrier(8)

    def race():
        barrier.wait()
        if cache.check_and_mark("hot-pkg", "3.0.0"):
            wins.append(1)

    threads = [threading.Thread(target=race) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
