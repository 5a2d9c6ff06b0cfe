"""Observability for a locally hosted llama.cpp engine, plus a RAG service.

This package provides:
- A Prometheus exporter for the engine's /stats endpoint
- OpenTelemetry tracing and request metrics for inference calls
- Document ingestion, retrieval and retrieval-augmented generation over HTTP
"""
