import asyncio
import gzip
import json
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from course_chatbot.core.catalog_index import CatalogIndex


def make_provider(
    name: str,
    city: str,
    courses: List[Dict[str, Any]],
    code: str = "P00",
) -> Dict[str, Any]:
    return {
        "name": name,
        "institutionCode": code,
        "aliases": [],
        "address": {"line4": city, "country": {"mappedCaption": "England"}},
        "websiteUrl": f"https://{code.lower()}.example.ac.uk",
        "courses": courses,
    }


def make_course(
    title: str,
    qualification: str,
    campus: str,
    start: str,
    app_code: str = "X000",
    fee: Any = None,
) -> Dict[str, Any]:
    option: Dict[str, Any] = {
        "studyMode": {"mappedCaption": "Full-time"},
        "duration": {"quantity": 1, "durationType": {"caption": "Year"}},
        "location": {"name": campus},
        "startDate": {"date": start},
        "outcomeQualification": {"caption": qualification},
    }
    if fee is not None:
        option["fee"] = fee
    return {
        "courseTitle": title,
        "applicationCode": app_code,
        "academicYearId": "2025",
        "routingData": {"destination": {"caption": "Main"}},
        "outcomeQualification": {"caption": qualification},
        "options": [option],
    }


@pytest.fixture
def two_providers() -> List[Dict[str, Any]]:
    """Manchester MSc Computer Science (Sep) + London BSc Data Science (Jan)."""
    return [
        make_provider(
            "Northern University",
            "Manchester",
            [make_course("MSc Computer Science", "MSc", "Manchester", "01/09/2025", "G400")],
            code="N01",
        ),
        make_provider(
            "Capital College",
            "London",
            [make_course("BSc Data Science", "BSc (Hons)", "London", "01/01/2025", "G401")],
            code="C02",
        ),
    ]


@pytest.fixture
def write_dataset(tmp_path: Path) -> Callable[..., Path]:
    """Write a dataset file; compress=True gzips it."""

    def _write(payload: Any, name: str = "providers.json", compress: bool = False, raw: bytes = b"") -> Path:
        path = tmp_path / name
        data = raw or json.dumps(payload).encode("utf-8")
        if compress:
            with gzip.open(path, "wb") as fh:
                fh.write(data)
        else:
            path.write_bytes(data)
        return path

    return _write


@pytest.fixture
def stub_stream() -> Callable[..., Any]:
    """
    Build a stream factory over in-memory providers that counts how many
    streaming passes were started. Yields to the loop between providers.
    """

    def _make(providers: List[Any], fail_after: int = -1):
        calls = {"n": 0}

        def factory():
            calls["n"] += 1

            async def gen():
                for i, p in enumerate(providers):
                    if i == fail_after:
                        from course_chatbot.core.data_loader import DataLoaderError

                        raise DataLoaderError("stream broke")
                    await asyncio.sleep(0)
                    yield p

            return gen()

        return factory, calls

    return _make


@pytest.fixture
def built_index(stub_stream, two_providers) -> CatalogIndex:
    factory, _ = stub_stream(two_providers)
    index = CatalogIndex(stream_factory=factory)
    asyncio.run(index.build_index())
    return index
