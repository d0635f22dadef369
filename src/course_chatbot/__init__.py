"""
Course catalog chatbot core.

The conversational layer talks to this package through two calls:
- core.query_engine.is_in_scope(text): is this a catalog question?
- core.query_engine.query_dataset(text, max_results): answer it from the index
"""
