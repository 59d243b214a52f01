# src/tflcycles_exporter/api/app.py
"""
FastAPI application wiring.

This file creates the `FastAPI` instance and registers process-level metrics.
Scrape logic lives in `tflcycles_exporter.exporter.scrape`.
"""

from __future__ import annotations

from fastapi import FastAPI

from tflcycles_exporter import __version__
from tflcycles_exporter.core.logging import configure_logging
from tflcycles_exporter.exporter.scrape import register_build_info

from .routes import router

configure_logging()
register_build_info()

app = FastAPI(title="TfL Cycles Exporter", version=__version__, docs_url=None, redoc_url=None)
app.include_router(router)
