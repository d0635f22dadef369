from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Union

from course_chatbot.config import (
    DATA_ARRAY_KEY,
    DEFAULT_MAX_RESULTS,
    PROVIDERS_DATA_PATH,
    PROVIDERS_DATA_URL,
    QUERY_CACHE_CAPACITY,
    RANKING_DEPTH,
)
from course_chatbot.core.aliases import expand_query, phrase_tags
from course_chatbot.core.data_loader import DataLoaderError, fetch_dataset, iter_providers
from course_chatbot.core.flattener import FlattenStats, MalformedRecordError, Record, flatten_provider
from course_chatbot.core.normalizer import tokenize
from course_chatbot.core.query_cache import QueryCache, cache_key

logger = logging.getLogger(__name__)

ProviderStream = Callable[[], AsyncIterator[Any]]


class IndexBuildError(Exception):
    """Raised when the streaming build pass fails for a reason other than I/O."""


class IndexState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    BUILDING = "BUILDING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class BuildStats:
    providers: int
    records: int
    malformed: int
    empty: int
    tokens: int
    elapsed_seconds: float


class CatalogIndex:
    """
    In-memory inverted index over flattened catalog Records.

    Lifecycle:
      NOT_STARTED -> BUILDING -> READY
                             \\-> FAILED -> BUILDING (next build_index call)

    Records and postings are written only during the single build pass and are
    read-only afterwards. Every instance owns its own records, postings and
    query cache, so tests (or several datasets) can live side by side.
    """

    def __init__(
        self,
        source: Union[str, Path, None] = None,
        *,
        stream_factory: Optional[ProviderStream] = None,
        array_key: str = DATA_ARRAY_KEY,
        cache_capacity: int = QUERY_CACHE_CAPACITY,
        ranking_depth: int = RANKING_DEPTH,
    ):
        self.source = Path(source) if source is not None else None
        self.array_key = array_key
        self.ranking_depth = int(ranking_depth)
        self._stream_factory = stream_factory

        self.records: List[Record] = []
        self.postings: Dict[str, List[int]] = {}
        self.cache: QueryCache[List[Record]] = QueryCache(cache_capacity)

        self.state = IndexState.NOT_STARTED
        self.stats: Optional[BuildStats] = None
        self.last_error: Optional[BaseException] = None
        self._pending: Optional["asyncio.Future[BuildStats]"] = None

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def _open_stream(self) -> AsyncIterator[Any]:
        if self._stream_factory is not None:
            return self._stream_factory()
        path = self.source
        if path is None:
            if PROVIDERS_DATA_URL:
                path = await asyncio.to_thread(fetch_dataset, PROVIDERS_DATA_URL)
            else:
                path = PROVIDERS_DATA_PATH
        return iter_providers(path, array_key=self.array_key)

    def _fail(self, exc: BaseException) -> None:
        self.records = []
        self.postings = {}
        self.state = IndexState.FAILED
        self.last_error = exc
        self._pending = None

    def _add(self, record: Record) -> None:
        rid = len(self.records)
        record = replace(record, id=rid)
        self.records.append(record)

        tokens = dict.fromkeys(tokenize(record.blob))
        for tag in phrase_tags(record.blob):
            tokens.setdefault(tag)
        for tok in tokens:
            self.postings.setdefault(tok, []).append(rid)

    async def _run_build(self) -> BuildStats:
        t0 = time.perf_counter()
        flat = FlattenStats()
        skipped_providers = 0

        logger.info("Building catalog index (source=%s)", self.source or "<default>")
        try:
            async for provider in await self._open_stream():
                try:
                    for record in flatten_provider(provider, flat):
                        self._add(record)
                except MalformedRecordError as exc:
                    skipped_providers += 1
                    logger.debug("Skipping malformed provider: %s", exc)
        except asyncio.CancelledError as exc:
            self._fail(exc)
            logger.warning("Catalog index build cancelled.")
            raise
        except (DataLoaderError, IndexBuildError) as exc:
            self._fail(exc)
            logger.warning("Catalog index build failed: %s", exc)
            raise
        except Exception as exc:
            self._fail(exc)
            logger.warning("Catalog index build failed: %s", exc)
            raise IndexBuildError(f"Catalog index build failed: {exc}") from exc

        malformed = flat.malformed + skipped_providers
        if malformed:
            logger.warning(
                "Skipped %d malformed entries while indexing (e.g. %s)",
                malformed,
                "; ".join(flat.malformed_samples) or "provider-level",
            )

        self.stats = BuildStats(
            providers=flat.providers,
            records=len(self.records),
            malformed=malformed,
            empty=flat.empty,
            tokens=len(self.postings),
            elapsed_seconds=time.perf_counter() - t0,
        )
        self.state = IndexState.READY
        self.last_error = None
        logger.info(
            "Catalog index ready: %d records from %d providers, %d tokens (%.2fs)",
            self.stats.records,
            self.stats.providers,
            self.stats.tokens,
            self.stats.elapsed_seconds,
        )
        return self.stats

    async def build_index(self) -> BuildStats:
        """
        Build the index once; concurrent callers share the in-flight pass.

        A failed pass is reported to every waiting caller and then forgotten,
        so the next call starts a fresh build.
        """
        if self.state is IndexState.READY and self.stats is not None:
            return self.stats

        if self._pending is None:
            self.state = IndexState.BUILDING
            self.records = []
            self.postings = {}
            self.cache.clear()
            self._pending = asyncio.ensure_future(self._run_build())
            self._pending.add_done_callback(_consume_exception)

        # shield: a caller giving up must not cancel the shared build
        return await asyncio.shield(self._pending)

    def reset(self) -> None:
        """Drop all indexed data; the next build_index call rebuilds."""
        if self.state is IndexState.BUILDING:
            raise IndexBuildError("Cannot reset while a build is in progress.")
        self.records = []
        self.postings = {}
        self.cache.clear()
        self.stats = None
        self.last_error = None
        self._pending = None
        self.state = IndexState.NOT_STARTED

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def iter_records(self) -> Iterator[Record]:
        return iter(self.records)

    def _score(self, record: Record, tokens: List[str]) -> int:
        # non-overlapping substring hits, not exact token matches
        return sum(record.blob.count(tok) for tok in tokens)

    async def rank(self, tokens: List[str]) -> List[Record]:
        """
        Ranked candidates for an expanded token list (OR semantics).

        Results are cached by the token sequence, capped at ranking_depth.
        """
        if not tokens:
            return []

        await self.build_index()

        key = cache_key(tokens)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Query cache hit: %s", key)
            return cached
        logger.debug("Query cache miss: %s", key)

        candidate_ids: Dict[int, None] = {}
        for tok in tokens:
            for rid in self.postings.get(tok, ()):
                candidate_ids.setdefault(rid)

        scored = [(self._score(self.records[rid], tokens), rid) for rid in candidate_ids]
        # sorted() is stable: equal scores keep candidate order
        scored.sort(key=lambda pair: -pair[0])

        ranked = [self.records[rid] for _, rid in scored[: self.ranking_depth]]
        self.cache.put(key, ranked)
        return ranked

    async def find_relevant_data(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[Dict[str, Any]]:
        """
        Raw ranked retrieval without intent handling.

        Returns display-safe rows ({"id", "raw"}); the search blob never leaves
        the index.
        """
        tokens = expand_query(query)
        if not tokens:
            return []
        ranked = await self.rank(tokens)
        return [r.public() for r in ranked[: max(0, int(max_results))]]


def _consume_exception(fut: "asyncio.Future[BuildStats]") -> None:
    # Retrieved here so an unawaited failed build does not log "never retrieved"
    if not fut.cancelled():
        fut.exception()


# ---------------------------------------------------------------------------
# Process-wide default instance for the conversational layer
# ---------------------------------------------------------------------------

_DEFAULT_INDEX: Optional[CatalogIndex] = None


def get_default_index() -> CatalogIndex:
    global _DEFAULT_INDEX
    if _DEFAULT_INDEX is None:
        _DEFAULT_INDEX = CatalogIndex()
    return _DEFAULT_INDEX


def set_default_index(index: Optional[CatalogIndex]) -> None:
    global _DEFAULT_INDEX
    _DEFAULT_INDEX = index
