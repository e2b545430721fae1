"""
Document Conversion Scheduler package.

Resource-aware scheduling core for document conversion (memory bands,
priority queue with adaptive concurrency, chunked processing and durable
uploads) with a FastAPI front-end in `webapi` and a Streamlit client.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
