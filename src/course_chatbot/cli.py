"""
CLI (Command Line Interface).

Quick terminal commands for checking a dataset and trying questions:

    course-chatbot build [--data providers.json.gz]
    course-chatbot ask "how many msc courses start in september" [--max 10] [--json]

The index lives in memory only, so every invocation streams the dataset again.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from course_chatbot.config import DATA_ARRAY_KEY, DEFAULT_MAX_RESULTS, LOG_LEVEL
from course_chatbot.core.catalog_index import CatalogIndex, IndexBuildError
from course_chatbot.core.context import format_course_slice
from course_chatbot.core.data_loader import DataLoaderError
from course_chatbot.core.query_engine import Intent, QueryEngineError, query_dataset

logger = logging.getLogger(__name__)


def _make_index(data: Optional[Path], array_key: str) -> CatalogIndex:
    return CatalogIndex(data, array_key=array_key)


def _cmd_build(args: argparse.Namespace) -> int:
    index = _make_index(args.data, args.array_key)
    stats = asyncio.run(index.build_index())
    print(f"Providers: {stats.providers}")
    print(f"Records:   {stats.records}")
    print(f"Tokens:    {stats.tokens}")
    print(f"Skipped:   {stats.malformed} malformed, {stats.empty} empty")
    print(f"Elapsed:   {stats.elapsed_seconds:0.2f}s")
    return 0


def _cmd_ask(args: argparse.Namespace) -> int:
    question = (args.question or "").strip()
    if not question:
        print("Please provide a question.")
        return 1
    if args.max < 1:
        print("--max must be at least 1.")
        return 1

    index = _make_index(args.data, args.array_key)
    result = asyncio.run(query_dataset(question, args.max, index=index))

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return 0

    if result.intent is Intent.GENERAL:
        print("Not a catalog question.")
        return 0

    if result.intent is Intent.LIST and result.rows:
        print(format_course_slice(result.rows, 0, args.max, head=f"Found {result.count} option(s)."))
        return 0

    print(result.text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argparse CLI parser with sub-commands.
    """
    parser = argparse.ArgumentParser(prog="course-chatbot", description="Course catalog search CLI")
    parser.add_argument("--data", type=Path, default=None, help="Dataset path (.json or .json.gz)")
    parser.add_argument(
        "--array-key",
        type=str,
        default=DATA_ARRAY_KEY,
        help="Key holding the provider array when the root is an object",
    )
    parser.add_argument("--log-level", type=str, default=LOG_LEVEL, help="Logging level (default from LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("build", help="Stream the dataset, build the index and print stats")

    p_ask = sub.add_parser("ask", help="Answer a free-text question")
    p_ask.add_argument("question", type=str, help="Question text")
    p_ask.add_argument("--max", type=int, default=DEFAULT_MAX_RESULTS, help="Maximum rows to return")
    p_ask.add_argument("--json", action="store_true", help="Print the raw result as JSON")

    return parser


def main(argv: list[str] | None = None) -> None:
    """
    CLI entry point. Parses args, dispatches to command handlers,
    and exits via SystemExit with a return code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "build":
            raise SystemExit(_cmd_build(args))
        if args.command == "ask":
            raise SystemExit(_cmd_ask(args))
    except (DataLoaderError, IndexBuildError, QueryEngineError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}")
        raise SystemExit(1)

    raise SystemExit(2)
