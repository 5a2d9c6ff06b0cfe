"""OpenTelemetry tracing for llama.cpp inference."""

from typing import Dict, Optional, Tuple

import structlog
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.trace import Span

from llamawatch.common.config import DEFAULT_OTLP_ENDPOINT
from llamawatch.common.errors import TracerInitError

logger = structlog.get_logger()

INSTRUMENTATION_NAME = "llamawatch.monitor"
SERVICE_VERSION = "1.0.0"


def otlp_traces_url(endpoint: str) -> str:
    """Turn a host:port endpoint into the insecure OTLP/HTTP traces URL."""
    if endpoint.startswith(("http://", "https://")):
        base = endpoint.rstrip("/")
    else:
        base = f"http://{endpoint}"
    return f"{base}/v1/traces"


class LlamaCppTracer:
    """
    Emits llama.cpp inference spans to an OTLP collector.

    Every span is sampled. Export happens on a background batch processor;
    export failures are logged by the SDK and never reach the caller.
    """

    def __init__(
        self,
        service_name: str = "llama-cpp-monitor",
        endpoint: str = DEFAULT_OTLP_ENDPOINT,
        exporter: Optional[SpanExporter] = None
    ):
        """
        Build the span pipeline.

        Args:
            service_name: Value of the service.name resource attribute
            endpoint: OTLP/HTTP collector as host:port
            exporter: Optional span exporter used instead of OTLP. Spans are
                      then exported synchronously, which tests rely on.

        Raises:
            TracerInitError: If the pipeline cannot be constructed
        """
        if not endpoint and exporter is None:
            raise TracerInitError("OTLP endpoint cannot be empty")

        self.service_name = service_name
        self.endpoint = endpoint

        try:
            resource = Resource.create({
                "service.name": service_name,
                "service.version": SERVICE_VERSION,
                "environment": "production",
            })
            self._provider = TracerProvider(resource=resource, sampler=ALWAYS_ON)

            if exporter is None:
                exporter = OTLPSpanExporter(endpoint=otlp_traces_url(endpoint))
                self._provider.add_span_processor(BatchSpanProcessor(exporter))
            else:
                self._provider.add_span_processor(SimpleSpanProcessor(exporter))

            self._tracer = self._provider.get_tracer(INSTRUMENTATION_NAME, SERVICE_VERSION)
        except Exception as e:
            raise TracerInitError(f"failed to create tracer: {e}") from e

        logger.info("Tracer initialized", service_name=service_name, endpoint=endpoint)

    def _start(self, name: str, attributes: Dict, context: Optional[Context]) -> Tuple[Context, Span]:
        span = self._tracer.start_span(name, context=context, attributes=attributes)
        return trace.set_span_in_context(span, context), span

    def trace_inference(
        self,
        model_info: Dict[str, str],
        input_tokens: int,
        context: Optional[Context] = None
    ) -> Tuple[Context, Span]:
        """Start a `llamacpp.inference` span. The caller ends it."""
        return self._start(
            "llamacpp.inference",
            {
                "model.name": model_info.get("name", ""),
                "model.size": model_info.get("size", ""),
                "model.quantization": model_info.get("quantization", ""),
                "tokens.input": input_tokens,
            },
            context,
        )

    def trace_token_generation(
        self,
        batch_size: int,
        context: Optional[Context] = None
    ) -> Tuple[Context, Span]:
        """Start a `llamacpp.token_generation` span. The caller ends it."""
        return self._start("llamacpp.token_generation", {"batch.size": batch_size}, context)

    def record_generated_token(
        self,
        context: Optional[Context],
        token_id: int,
        token_text: str,
        probability: Optional[float] = None
    ):
        """Add a `token.generated` event to the span current in `context`."""
        attributes = {"token.id": token_id, "token.text": token_text}
        # Probabilities are not reported by every engine
        if probability is not None:
            attributes["token.probability"] = float(probability)
        trace.get_current_span(context).add_event("token.generated", attributes=attributes)

    def record_kv_cache_info(self, context: Optional[Context], used_entries: int, total_entries: int):
        span = trace.get_current_span(context)
        span.set_attribute("kv_cache.used_entries", used_entries)
        span.set_attribute("kv_cache.total_entries", total_entries)
        if total_entries > 0:
            span.set_attribute("kv_cache.utilization", used_entries / total_entries)

    def record_memory_usage(
        self,
        context: Optional[Context],
        model_mb: float,
        kv_cache_mb: float,
        total_ram_mb: float
    ):
        span = trace.get_current_span(context)
        span.set_attribute("memory.model_mb", float(model_mb))
        span.set_attribute("memory.kv_cache_mb", float(kv_cache_mb))
        span.set_attribute("memory.total_ram_mb", float(total_ram_mb))

    def record_tokens_per_second(self, context: Optional[Context], tokens_per_second: float):
        trace.get_current_span(context).set_attribute(
            "performance.tokens_per_second", float(tokens_per_second)
        )

    def record_first_token_latency(self, context: Optional[Context], latency_ms: float):
        trace.get_current_span(context).set_attribute(
            "performance.first_token_latency_ms", float(latency_ms)
        )

    def shutdown(self, timeout: float = 5.0):
        """Flush pending spans within `timeout` seconds, then stop the pipeline."""
        flushed = self._provider.force_flush(timeout_millis=int(timeout * 1000))
        if not flushed:
            logger.warning("Timed out flushing spans", timeout=timeout)
        self._provider.shutdown()
        logger.info("Tracer shut down")
