"""
Index builder and retrieval:
- one streaming pass no matter how many callers
- failed builds are reported to every caller and then retried from scratch
- ids / postings follow stream-arrival order
- ranking is substring-count based, ties keep candidate order
"""

import asyncio

import pytest

from course_chatbot.core.catalog_index import CatalogIndex, IndexBuildError, IndexState
from course_chatbot.core.data_loader import DataLoaderError

from conftest import make_course, make_provider


def _providers(titles):
    return [
        make_provider(f"Provider {i}", "Leeds", [make_course(t, "BSc", "Leeds", "01/09/2025")], code=f"P{i}")
        for i, t in enumerate(titles)
    ]


def test_concurrent_builds_share_one_pass(stub_stream, two_providers):
    factory, calls = stub_stream(two_providers)
    index = CatalogIndex(stream_factory=factory)

    async def _run():
        return await asyncio.gather(*(index.build_index() for _ in range(5)))

    results = asyncio.run(_run())

    assert calls["n"] == 1
    assert all(r is results[0] for r in results)
    assert index.state is IndexState.READY
    assert results[0].records == 2

    # already READY: no new pass
    asyncio.run(index.build_index())
    assert calls["n"] == 1


def test_failed_build_rejects_all_waiters_then_retries(stub_stream, two_providers):
    factory, calls = stub_stream(two_providers, fail_after=1)
    index = CatalogIndex(stream_factory=factory)

    async def _run():
        return await asyncio.gather(*(index.build_index() for _ in range(3)), return_exceptions=True)

    results = asyncio.run(_run())
    assert calls["n"] == 1
    assert all(isinstance(r, DataLoaderError) for r in results)
    assert index.state is IndexState.FAILED
    assert index.records == []
    assert index.postings == {}

    good_factory, good_calls = stub_stream(two_providers)
    index._stream_factory = good_factory
    stats = asyncio.run(index.build_index())
    assert good_calls["n"] == 1
    assert stats.records == 2
    assert index.state is IndexState.READY
    assert index.last_error is None


def test_unexpected_errors_are_wrapped():
    def factory():
        async def gen():
            yield {"courses": []}
            raise RuntimeError("boom")

        return gen()

    index = CatalogIndex(stream_factory=factory)
    with pytest.raises(IndexBuildError):
        asyncio.run(index.build_index())
    assert index.state is IndexState.FAILED


def test_ids_are_contiguous_in_arrival_order(stub_stream):
    titles = ["BSc Biology", "BSc Chemistry", "BSc Physics", "BSc Geology"]
    factory, _ = stub_stream(_providers(titles))
    index = CatalogIndex(stream_factory=factory)
    asyncio.run(index.build_index())

    assert [r.id for r in index.records] == [0, 1, 2, 3]
    assert [r.raw["course_title"] for r in index.records] == titles


def test_postings_are_strictly_ascending(stub_stream):
    factory, _ = stub_stream(_providers(["BSc Biology Biology", "BSc Chemistry", "BSc Biology"]))
    index = CatalogIndex(stream_factory=factory)
    asyncio.run(index.build_index())

    assert index.postings["biology"] == [0, 2]
    for ids in index.postings.values():
        assert ids == sorted(set(ids))


def test_malformed_entries_are_counted_not_fatal(stub_stream, two_providers):
    factory, _ = stub_stream(["junk", two_providers[0], {"courses": "bad"}, two_providers[1]])
    index = CatalogIndex(stream_factory=factory)
    stats = asyncio.run(index.build_index())
    assert stats.records == 2
    assert stats.malformed == 2


def test_builds_from_a_file(write_dataset, two_providers):
    index = CatalogIndex(write_dataset(two_providers, compress=True))
    stats = asyncio.run(index.build_index())
    assert stats.providers == 2
    assert stats.tokens == len(index.postings)


def test_alias_and_full_phrase_both_retrieve(built_index):
    by_alias = asyncio.run(built_index.find_relevant_data("cs"))
    by_phrase = asyncio.run(built_index.find_relevant_data("computer science"))

    assert by_alias[0]["raw"]["course_title"] == "MSc Computer Science"
    assert by_phrase[0]["raw"]["course_title"] == "MSc Computer Science"
    assert 0 in built_index.postings["cs"]


def test_rows_never_expose_blob(built_index):
    rows = asyncio.run(built_index.find_relevant_data("science"))
    assert len(rows) == 2
    for row in rows:
        assert set(row) == {"id", "raw"}


def test_ranking_by_substring_count_and_stable_ties(stub_stream):
    titles = ["BSc Law", "BSc Nursing", "BSc Nursing and Adult Nursing", "MSc Nursing"]
    factory, _ = stub_stream(_providers(titles))
    index = CatalogIndex(stream_factory=factory)

    rows = asyncio.run(index.find_relevant_data("nursing"))

    assert [r["raw"]["course_title"] for r in rows] == [
        "BSc Nursing and Adult Nursing",
        "BSc Nursing",
        "MSc Nursing",
    ]


def test_empty_query_returns_nothing_and_does_not_build(stub_stream, two_providers):
    factory, calls = stub_stream(two_providers)
    index = CatalogIndex(stream_factory=factory)
    assert asyncio.run(index.find_relevant_data("please find a course")) == []
    assert calls["n"] == 0


def test_max_results_caps_rows(built_index):
    assert len(asyncio.run(built_index.find_relevant_data("science", max_results=1))) == 1


def test_cache_eviction_forces_recompute(stub_stream, two_providers, monkeypatch):
    factory, _ = stub_stream(two_providers)
    index = CatalogIndex(stream_factory=factory, cache_capacity=2)

    scored = []
    original = index._score

    def counting_score(record, tokens):
        scored.append(tuple(tokens))
        return original(record, tokens)

    monkeypatch.setattr(index, "_score", counting_score)

    async def _run():
        await index.find_relevant_data("manchester")
        await index.find_relevant_data("london")
        await index.find_relevant_data("manchester")  # hit, promotes
        await index.find_relevant_data("science")      # evicts "london"

    asyncio.run(_run())
    assert "london" not in index.cache
    assert "manchester" in index.cache
    assert len(index.cache) == 2

    before = len(scored)
    asyncio.run(index.find_relevant_data("london"))
    assert len(scored) > before


def test_reset_allows_rebuild(stub_stream, two_providers):
    factory, calls = stub_stream(two_providers)
    index = CatalogIndex(stream_factory=factory)
    asyncio.run(index.build_index())
    index.reset()
    assert index.state is IndexState.NOT_STARTED
    assert index.records == []
    asyncio.run(index.build_index())
    assert calls["n"] == 2


def test_abandoned_waiter_does_not_cancel_the_build(two_providers):
    calls = {"n": 0}

    def slow_factory():
        calls["n"] += 1

        async def gen():
            for p in two_providers:
                await asyncio.sleep(0.05)
                yield p

        return gen()

    index = CatalogIndex(stream_factory=slow_factory)

    async def _run():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(index.build_index(), 0.01)
        assert index.state is IndexState.BUILDING
        return await index.build_index()

    stats = asyncio.run(_run())
    assert calls["n"] == 1
    assert stats.records == 2
    assert index.state is IndexState.READY
