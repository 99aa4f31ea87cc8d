"""FastAPI application package for the Authgate service."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
