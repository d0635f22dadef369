from __future__ import annotations

import asyncio
import gzip
import logging
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO, Optional, Union

import ijson
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from course_chatbot.config import (
    CACHE_DIR,
    DATA_ARRAY_KEY,
    DOWNLOAD_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
UTF8_BOM = b"\xef\xbb\xbf"

ROOT_ARRAY = "array"
ROOT_OBJECT = "object"

_OPEN_EVENTS = frozenset({"start_map", "start_array"})
_CLOSE_EVENTS = frozenset({"end_map", "end_array"})

PathLike = Union[str, Path]


class DataLoaderError(Exception):
    """Raised when the dataset cannot be fetched, opened or parsed."""


# ---------------------------------------------------------------------------
# Remote dataset download (optional)
# ---------------------------------------------------------------------------

def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Dataset hosts (object storage, CDNs) can be slow or transiently flaky.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_retry_session()
    return _SESSION


def fetch_dataset(
    url: str,
    dest: Optional[PathLike] = None,
    *,
    timeout_seconds: int = DOWNLOAD_TIMEOUT_SECONDS,
    chunk_size: int = 1 << 16,
) -> Path:
    """
    Stream a remote dataset to disk and return the local path.

    The body is written chunk by chunk (never held in memory) to a temporary
    ".part" file which is renamed once complete, so an interrupted download
    never leaves a truncated dataset behind.
    """
    url = (url or "").strip()
    if not url:
        raise DataLoaderError("No dataset URL given.")

    if dest is None:
        name = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0] or "providers.json"
        dest = CACHE_DIR / name
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")

    try:
        resp = _get_session().get(url, stream=True, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise DataLoaderError(f"HTTP error while downloading dataset: {exc}") from exc

    try:
        if resp.status_code != 200:
            raise DataLoaderError(f"Dataset download failed (status={resp.status_code}) for {url}")

        written = 0
        with part.open("wb") as out:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                if chunk:
                    out.write(chunk)
                    written += len(chunk)
    except requests.RequestException as exc:
        part.unlink(missing_ok=True)
        raise DataLoaderError(f"Dataset download interrupted: {exc}") from exc
    finally:
        resp.close()

    part.replace(dest)
    logger.info("Downloaded dataset %s -> %s (%d bytes)", url, dest, written)
    return dest


# ---------------------------------------------------------------------------
# Opening & root-shape detection
# ---------------------------------------------------------------------------

def open_dataset(path: PathLike) -> BinaryIO:
    """
    Open a dataset file for binary reading, transparently decompressing gzip.

    Compression is recognised by the magic bytes, not the file extension.
    """
    p = Path(path)
    try:
        with p.open("rb") as head_fh:
            head = head_fh.read(2)
        if head == GZIP_MAGIC:
            return gzip.open(p, "rb")  # type: ignore[return-value]
        return p.open("rb")
    except OSError as exc:
        raise DataLoaderError(f"Cannot open dataset {p}: {exc}") from exc


def detect_root_shape(fh: BinaryIO, chunk_size: int = 4096) -> str:
    """
    Look at the first meaningful byte of the document and rewind.

    Returns ROOT_ARRAY for "[" and ROOT_OBJECT for "{". This runs
    synchronously and completes before any streaming starts.
    """
    first: Optional[bytes] = None
    at_start = True
    try:
        while first is None:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            if at_start and chunk.startswith(UTF8_BOM):
                chunk = chunk[len(UTF8_BOM):]
            at_start = False
            stripped = chunk.lstrip()
            if stripped:
                first = stripped[:1]
        fh.seek(0)
    except (OSError, EOFError) as exc:
        raise DataLoaderError(f"Cannot read dataset header: {exc}") from exc

    if first == b"[":
        return ROOT_ARRAY
    if first == b"{":
        return ROOT_OBJECT
    if first is None:
        raise DataLoaderError("Dataset is empty.")
    raise DataLoaderError(f"Dataset root must be a JSON array or object, found {first!r}.")


class _ThreadedReader:
    """
    Async file-like wrapper: each read (and gzip inflate) runs in a worker
    thread, so disk I/O overlaps with parsing on the event loop.
    """

    def __init__(self, fh: BinaryIO):
        self._fh = fh

    async def read(self, size: int = -1) -> bytes:
        return await asyncio.to_thread(self._fh.read, size)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

async def _iter_object_entries(events: AsyncIterator[Any], array_key: str) -> AsyncIterator[Any]:
    """
    Yield each value of a root object, one at a time, from ijson parse events.

    A value stored under `array_key` that is itself an array is descended into
    and its elements are yielded instead ({"records": [provider, ...]}).
    """
    depth = 0            # nesting depth of the current event
    entry_depth = 1      # depth of the container whose children are entries
    key: Optional[str] = None
    builder: Optional[ijson.ObjectBuilder] = None

    async for _prefix, event, value in events:
        if builder is not None:
            builder.event(event, value)
            if event in _OPEN_EVENTS:
                depth += 1
            elif event in _CLOSE_EVENTS:
                depth -= 1
                if depth == entry_depth:
                    yield builder.value
                    builder = None
            continue

        if event == "map_key":
            key = value
            continue

        if event in _CLOSE_EVENTS:
            depth -= 1
            if depth < entry_depth:
                entry_depth = 1
            continue

        if depth == 0:
            depth = 1
            continue

        if event == "start_array" and depth == 1 and key == array_key:
            depth = entry_depth = 2
            continue

        if event in _OPEN_EVENTS:
            builder = ijson.ObjectBuilder()
            builder.event(event, value)
            depth += 1
            continue

        # scalar entry; the flattener rejects it as malformed
        yield value


async def iter_providers(path: PathLike, array_key: str = DATA_ARRAY_KEY) -> AsyncIterator[Any]:
    """
    Stream provider entries from a JSON dataset without materializing it.

    Accepted shapes:
      - [provider, provider, ...]
      - {"<id>": provider, "<id>": provider, ...}
      - {"records": [provider, ...]}   (key configurable via array_key)
    """
    fh = open_dataset(path)
    try:
        shape = detect_root_shape(fh)
        logger.info("Streaming dataset %s (root=%s)", path, shape)

        reader = _ThreadedReader(fh)
        if shape == ROOT_ARRAY:
            entries = ijson.items_async(reader, "item", use_float=True)
        else:
            entries = _iter_object_entries(ijson.parse_async(reader, use_float=True), array_key)

        try:
            async for entry in entries:
                yield entry
        except ijson.JSONError as exc:
            raise DataLoaderError(f"Invalid JSON in dataset {path}: {exc}") from exc
        except (OSError, EOFError) as exc:
            raise DataLoaderError(f"Error while reading dataset {path}: {exc}") from exc
    finally:
        fh.close()
