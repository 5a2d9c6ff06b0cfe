"""Prometheus metric registry for llama.cpp observation.

Two groups of series share one CollectorRegistry:

- Engine series (MetricRegistry): gauges and the batch latency histogram
  derived from /stats snapshots, labelled by `model`.
- Inference series (InferenceMetrics): per-request latency, token counters,
  context overflows and errors, labelled by model name/size/quantization.

prometheus_client guards every child series with its own lock, so updates and
renders are safe from any thread or task without a registry-wide lock.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


def linear_buckets(start: float, width: float, count: int) -> List[float]:
    """
    Build `count` upper bounds starting at `start`, `width` apart.

    Bounds are rounded to suppress float accumulation noise in the
    exposition (0.011 rather than 0.011000000000000001).
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if width <= 0:
        raise ValueError("width must be positive")
    return [round(start + i * width, 10) for i in range(count)]


# 0.001 .. 0.046 in 5 ms steps, plus +Inf added by prometheus_client
BATCH_LATENCY_BUCKETS = tuple(linear_buckets(0.001, 0.005, 10))

ENGINE_LABELS = ("model",)


class MetricKind(str, Enum):
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class SeriesSpec:
    """One entry of the fixed engine series catalogue."""
    name: str
    documentation: str
    kind: MetricKind = MetricKind.GAUGE


ENGINE_SERIES: Tuple[SeriesSpec, ...] = (
    # Memory
    SeriesSpec("llamacpp_memory_usage_bytes", "Memory usage by llama.cpp in bytes"),
    SeriesSpec("llamacpp_total_memory_bytes", "Total memory available to llama.cpp in bytes"),
    # Performance
    SeriesSpec("llamacpp_tokens_per_second", "Tokens processed per second by llama.cpp"),
    SeriesSpec("llamacpp_cpu_utilization_percent", "CPU utilization by llama.cpp in percent"),
    SeriesSpec("llamacpp_gpu_utilization_percent", "GPU utilization by llama.cpp in percent"),
    SeriesSpec("llamacpp_temperature_celsius", "GPU temperature in celsius"),
    # Context
    SeriesSpec("llamacpp_context_size_tokens", "Current context size in tokens"),
    SeriesSpec("llamacpp_max_context_size_tokens", "Maximum context size in tokens"),
    # Model
    SeriesSpec("llamacpp_model_size_bytes", "Model size in bytes"),
    SeriesSpec("llamacpp_model_parameters", "Number of parameters in the model"),
    # Batch
    SeriesSpec("llamacpp_batch_size", "Current batch size in tokens"),
    SeriesSpec("llamacpp_optimal_batch_size", "Optimal batch size in tokens"),
    SeriesSpec(
        "llamacpp_batch_latency_seconds",
        "Batch processing latency in seconds",
        MetricKind.HISTOGRAM,
    ),
    # KV cache
    SeriesSpec("llamacpp_kv_cache_usage_bytes", "KV cache usage in bytes"),
    SeriesSpec("llamacpp_kv_cache_limit_bytes", "KV cache limit in bytes"),
    # System
    SeriesSpec("llamacpp_thread_count", "Number of threads used by llama.cpp"),
    SeriesSpec(
        "llamacpp_status",
        "Status of llama.cpp (0 = unknown, 1 = idle, 2 = loading, 3 = running)",
    ),
)


class MetricRegistry:
    """
    Owns the engine series catalogue and renders the text exposition.

    Gauges overwrite their previous value; the histogram accumulates.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        latency_buckets: Sequence[float] = BATCH_LATENCY_BUCKETS
    ):
        """
        Initialize the registry.

        Args:
            registry: Optional Prometheus registry. A fresh one is created by
                      default so several instances never collide.
            latency_buckets: Upper bounds for llamacpp_batch_latency_seconds
        """
        self.collector_registry = registry if registry is not None else CollectorRegistry()
        self.latency_buckets = tuple(latency_buckets)
        self._series: Dict[str, Union[Gauge, Histogram]] = {}
        self._kinds: Dict[str, MetricKind] = {}

        for spec in ENGINE_SERIES:
            if spec.kind is MetricKind.HISTOGRAM:
                metric = Histogram(
                    spec.name,
                    spec.documentation,
                    labelnames=ENGINE_LABELS,
                    buckets=self.latency_buckets,
                    registry=self.collector_registry,
                )
            else:
                metric = Gauge(
                    spec.name,
                    spec.documentation,
                    labelnames=ENGINE_LABELS,
                    registry=self.collector_registry,
                )
            self._series[spec.name] = metric
            self._kinds[spec.name] = spec.kind

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def names(self) -> List[str]:
        return list(self._series)

    def _child(self, name: str, labels: Dict[str, str], kind: MetricKind):
        if name not in self._series:
            raise KeyError(f"unknown series: {name}")
        if self._kinds[name] is not kind:
            raise TypeError(f"{name} is a {self._kinds[name].value}, not a {kind.value}")
        if set(labels) != set(ENGINE_LABELS):
            raise ValueError(f"labels must be exactly {ENGINE_LABELS}, got {sorted(labels)}")
        if not labels["model"]:
            raise ValueError("model label cannot be empty")
        return self._series[name].labels(**labels)

    def set(self, name: str, labels: Dict[str, str], value: float) -> None:
        """Overwrite a gauge series."""
        self._child(name, labels, MetricKind.GAUGE).set(value)

    def observe(self, name: str, labels: Dict[str, str], value: float) -> None:
        """Add one observation to a histogram series."""
        self._child(name, labels, MetricKind.HISTOGRAM).observe(value)

    def render(self) -> bytes:
        """Render every registered series in the Prometheus text format."""
        return generate_latest(self.collector_registry)

    def sample_value(self, name: str, labels: Dict[str, str]) -> Optional[float]:
        """Read one sample (e.g. "llamacpp_status" or "llamacpp_batch_latency_seconds_count")."""
        return self.collector_registry.get_sample_value(name, labels)


INFERENCE_LABELS = ("model_name", "model_size", "model_quantization")


class InferenceMetrics:
    """Prometheus metrics for individual inference requests."""

    def __init__(self, registry: MetricRegistry):
        target = registry.collector_registry

        self.inference_latency_seconds = Gauge(
            "llamacpp_inference_latency_seconds",
            "End-to-end latency of the most recent inference in seconds",
            labelnames=INFERENCE_LABELS,
            registry=target,
        )
        self.first_token_latency_seconds = Gauge(
            "llamacpp_first_token_latency_seconds",
            "Time to first streamed token of the most recent inference in seconds",
            labelnames=INFERENCE_LABELS,
            registry=target,
        )
        self.prefill_tokens_total = Counter(
            "llamacpp_prefill_tokens_total",
            "Prompt tokens processed",
            labelnames=INFERENCE_LABELS,
            registry=target,
        )
        self.decode_tokens_total = Counter(
            "llamacpp_decode_tokens_total",
            "Tokens generated",
            labelnames=INFERENCE_LABELS,
            registry=target,
        )
        self.context_overflow_total = Counter(
            "llamacpp_context_overflow_total",
            "Requests that exceeded the model context window",
            labelnames=INFERENCE_LABELS,
            registry=target,
        )
        self.errors_total = Counter(
            "llamacpp_errors_total",
            "Inference errors",
            labelnames=INFERENCE_LABELS + ("error_type",),
            registry=target,
        )

    def record_inference(
        self,
        model_labels: Dict[str, str],
        latency: float,
        prefill_tokens: int,
        decode_tokens: int,
        first_token_latency: Optional[float] = None
    ):
        """Record the outcome of one successful inference."""
        self.inference_latency_seconds.labels(**model_labels).set(latency)
        self.prefill_tokens_total.labels(**model_labels).inc(max(prefill_tokens, 0))
        self.decode_tokens_total.labels(**model_labels).inc(max(decode_tokens, 0))
        if first_token_latency is not None:
            self.first_token_latency_seconds.labels(**model_labels).set(first_token_latency)

    def record_context_overflow(self, model_labels: Dict[str, str]):
        self.context_overflow_total.labels(**model_labels).inc()

    def record_error(self, model_labels: Dict[str, str], error_type: str):
        self.errors_total.labels(error_type=error_type, **model_labels).inc()
