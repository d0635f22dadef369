from __future__ import annotations

import asyncio
import threading
import time
import traceback
from typing import Any, Dict, List

import pandas as pd
import streamlit as st

from course_chatbot.config import APP_NAME, APP_VERSION, DEFAULT_MAX_RESULTS
from course_chatbot.core.catalog_index import CatalogIndex, IndexState
from course_chatbot.core.context import format_course_slice
from course_chatbot.core.query_engine import Intent, QueryEngineError, query_dataset

PAGE_SIZE = 5

# Reruns run on separate threads, each with its own event loop; only one may
# drive the build.
_BUILD_LOCK = threading.Lock()

DISPLAY_COLUMNS = [
    "course_title",
    "qualification",
    "provider",
    "campus",
    "start_date_raw",
    "study_mode",
    "duration",
    "fee",
    "application_code",
    "academic_year",
]


@st.cache_resource(show_spinner=False)
def _get_index() -> CatalogIndex:
    # One index per server process; Streamlit reruns share it across threads.
    return CatalogIndex()


def _ensure_built(index: CatalogIndex) -> None:
    with _BUILD_LOCK:
        if index.state is not IndexState.READY:
            asyncio.run(index.build_index())


def _rows_frame(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame.from_records([r["raw"] for r in rows])
    if df.empty:
        return df
    cols = [c for c in DISPLAY_COLUMNS if c in df.columns]
    return df[cols]


def _render_chat_area(index: CatalogIndex) -> None:
    st.subheader("Ask about courses")

    history: List[Dict[str, str]] = st.session_state.setdefault("history", [])
    for turn in history:
        with st.chat_message(turn["role"]):
            st.markdown(turn["text"])

    question = st.chat_input("e.g. how many msc computer science courses in manchester")
    if not question:
        return

    history.append({"role": "user", "text": question})
    with st.chat_message("user"):
        st.markdown(question)

    lowered = question.strip().lower()
    last_rows = st.session_state.get("last_rows") or []
    if lowered in {"more", "next", "show me more", "see more"} and last_rows:
        offset = st.session_state.get("last_offset", 0)
        reply = format_course_slice(last_rows, offset, PAGE_SIZE)
        st.session_state["last_offset"] = min(offset + PAGE_SIZE, len(last_rows))
    else:
        try:
            with st.spinner("Searching the catalog..."):
                _ensure_built(index)
                result = asyncio.run(query_dataset(question, 200, index=index))
        except Exception:
            st.error("Sorry, something went wrong while searching the catalog.")
            st.text_area("Traceback", value=traceback.format_exc(), height=220)
            return

        if result.intent is Intent.GENERAL:
            reply = "That doesn't look like a course question. Ask about a subject, level, campus or start month."
            st.session_state["last_rows"] = []
        elif result.intent is Intent.LIST and result.rows:
            st.session_state["last_rows"] = result.rows
            st.session_state["last_offset"] = min(PAGE_SIZE, len(result.rows))
            reply = format_course_slice(result.rows, 0, PAGE_SIZE, head=f"Found {result.count} option(s).")
        else:
            st.session_state["last_rows"] = result.rows
            st.session_state["last_offset"] = 0
            reply = result.text

    history.append({"role": "assistant", "text": reply})
    with st.chat_message("assistant"):
        st.markdown(reply)


def _render_index_status(index: CatalogIndex) -> None:
    with st.expander("Index status (developer view)", expanded=False):
        st.write(f"State: {index.state.value}")
        if index.stats is not None:
            s = index.stats
            st.write(
                f"Records: {s.records} from {s.providers} providers "
                f"(malformed skipped: {s.malformed}, empty dropped: {s.empty})"
            )
            st.write(f"Distinct tokens: {s.tokens} | Build time: {s.elapsed_seconds:0.2f}s")
        st.write(f"Query cache: {len(index.cache)}/{index.cache.capacity} entries")
        if index.last_error is not None:
            st.warning(f"Last build error: {index.last_error!r}")

        if st.button("Build index now"):
            t0 = time.perf_counter()
            try:
                with st.spinner("Streaming dataset and building index..."):
                    _ensure_built(index)
                st.success(f"Index ready in {time.perf_counter() - t0:0.2f}s.")
            except Exception:
                st.error("Index build failed. A later attempt will retry from scratch.")
                st.text_area("Traceback", value=traceback.format_exc(), height=220)


def _render_query_tester(index: CatalogIndex) -> None:
    with st.expander("Query test (developer view)", expanded=False):
        col1, col2 = st.columns([3, 1])
        with col1:
            question = st.text_input("Question:", value="msc computer science in manchester")
        with col2:
            max_rows = st.number_input("Max rows", min_value=1, max_value=500, value=DEFAULT_MAX_RESULTS)
            raw_only = st.checkbox("Raw retrieval only", value=False)

        if st.button("Run query", key="run_query_btn"):
            status = st.status("Preparing query...", expanded=True)
            t0 = time.perf_counter()
            try:
                _ensure_built(index)
                if raw_only:
                    rows = asyncio.run(index.find_relevant_data(question, int(max_rows)))
                    status.write(f"Retrieved {len(rows)} rows in {time.perf_counter() - t0:0.3f}s")
                    status.update(label="Done.", state="complete")
                    st.dataframe(_rows_frame(rows), use_container_width=True)
                    return

                result = asyncio.run(query_dataset(question, int(max_rows), index=index))
                status.write(f"Intent: {result.intent.value} | elapsed {time.perf_counter() - t0:0.3f}s")
                status.update(label="Done.", state="complete")

                st.json({k: v for k, v in result.to_dict().items() if k != "rows"})
                if result.rows:
                    st.dataframe(_rows_frame(result.rows), use_container_width=True)

            except QueryEngineError as qerr:
                status.update(label="Query failed.", state="error")
                st.error(f"Query failed: {qerr}")

            except Exception as e:
                status.update(label="Unexpected error.", state="error")
                st.error("Unexpected error while running query.")
                st.code(repr(e))
                st.text_area("Traceback", value=traceback.format_exc(), height=280)


def run_app() -> None:
    st.set_page_config(page_title=APP_NAME, page_icon="🎓", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Prototype version {APP_VERSION}")

    index = _get_index()
    _render_chat_area(index)
    _render_index_status(index)
    _render_query_tester(index)
