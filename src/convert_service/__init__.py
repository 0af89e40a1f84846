"""
File Conversion Service package.

This module provides a FastAPI application that converts and compresses
images and PDFs, streams progress over a WebSocket at `/ws` and serves the
results from a short-lived in-memory store.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
