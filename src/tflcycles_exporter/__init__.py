"""Prometheus exporter for TfL Santander Cycles dock and bike availability."""

__version__ = "0.1.0"
