"""Streamlit demo surface (run with `streamlit run main.py`)."""
