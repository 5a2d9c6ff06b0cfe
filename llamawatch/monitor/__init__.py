"""llama.cpp engine monitoring.

Exporter:
- StatsClient: Fetches /stats snapshots from the engine
- MetricRegistry: Engine series catalogue and text exposition
- ScrapeLoop: Periodic scrape into the registry
- ExpositionServer: Serves /metrics

Inference:
- LlamaCppTracer: OpenTelemetry spans for inference calls
- InferenceMonitor: Request-level metrics and tracing facade
- MonitoringMiddleware / trace_chat: Per-request monitor binding
"""

from llamawatch.monitor.exporter import ExpositionServer
from llamawatch.monitor.inference import (
    InferenceMonitor,
    InferenceTrace,
    ModelConfig,
    MonitoringMiddleware,
    get_monitor_from_context,
    trace_chat,
)
from llamawatch.monitor.metrics import InferenceMetrics, MetricRegistry
from llamawatch.monitor.scraper import ScrapeLoop
from llamawatch.monitor.stats_client import EngineStatus, StatsClient, StatsSnapshot
from llamawatch.monitor.tracing import LlamaCppTracer

__all__ = [
    # Exporter
    "StatsClient",
    "StatsSnapshot",
    "EngineStatus",
    "MetricRegistry",
    "ScrapeLoop",
    "ExpositionServer",
    # Inference
    "InferenceMetrics",
    "LlamaCppTracer",
    "InferenceMonitor",
    "InferenceTrace",
    "ModelConfig",
    "MonitoringMiddleware",
    "get_monitor_from_context",
    "trace_chat",
]
