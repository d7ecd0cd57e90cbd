"""Ambient runtime support: logging, tracing and metrics."""
