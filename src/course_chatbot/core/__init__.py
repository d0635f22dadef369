"""
Core search and analytics layer.

This package contains:
- normalizer / aliases: text normalization, tokenization and query expansion
- data_loader: streaming (optionally gzip) JSON dataset reader
- flattener: provider -> course x option Records
- catalog_index: single-flight index build, postings and ranked retrieval
- query_cache: LRU cache of ranked results
- query_engine: scope gate, intent, filters and aggregation
- context: row summaries and paged slices for the conversational layer
"""
