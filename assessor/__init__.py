"""assessor package initializer.

The FastAPI application lives in ``assessor.main``; importing the package
alone pulls in no web or database dependencies."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
