"""Periodic scrape loop feeding engine snapshots into the metric registry."""

import asyncio
from typing import Optional

import structlog

from llamawatch.monitor.metrics import MetricRegistry
from llamawatch.monitor.stats_client import StatsClient, StatsSnapshot

logger = structlog.get_logger()


def update_from_snapshot(registry: MetricRegistry, snapshot: StatsSnapshot, model_label: str):
    """
    Push one snapshot into the registry.

    Batch latency is converted from milliseconds to seconds, the status string
    is mapped to 0/1/2/3, and GPU utilization and temperature are only
    recorded when positive (they are absent on CPU-only engines).
    """
    labels = {"model": model_label}

    # Memory
    registry.set("llamacpp_memory_usage_bytes", labels, snapshot.memory.used_bytes)
    registry.set("llamacpp_total_memory_bytes", labels, snapshot.memory.total_bytes)
    registry.set("llamacpp_kv_cache_usage_bytes", labels, snapshot.memory.kv_cache_bytes)
    registry.set("llamacpp_kv_cache_limit_bytes", labels, snapshot.memory.kv_cache_max_bytes)

    # Performance
    registry.set("llamacpp_tokens_per_second", labels, snapshot.performance.tokens_per_second)
    registry.set("llamacpp_cpu_utilization_percent", labels, snapshot.performance.cpu_utilization)
    if snapshot.performance.gpu_utilization > 0:
        registry.set("llamacpp_gpu_utilization_percent", labels, snapshot.performance.gpu_utilization)
    if snapshot.performance.temperature > 0:
        registry.set("llamacpp_temperature_celsius", labels, snapshot.performance.temperature)

    # Model
    registry.set("llamacpp_model_size_bytes", labels, snapshot.model.size_bytes)
    registry.set("llamacpp_model_parameters", labels, snapshot.model.parameters)
    registry.set("llamacpp_context_size_tokens", labels, snapshot.model.context_size)
    registry.set("llamacpp_max_context_size_tokens", labels, snapshot.model.max_context_size)

    # Batch
    registry.set("llamacpp_batch_size", labels, snapshot.batch.size)
    registry.set("llamacpp_optimal_batch_size", labels, snapshot.batch.optimal_size)
    registry.observe("llamacpp_batch_latency_seconds", labels, snapshot.batch.latency_ms / 1000.0)

    # System
    registry.set("llamacpp_thread_count", labels, snapshot.system.threads)
    registry.set("llamacpp_status", labels, int(snapshot.system.engine_status))


class ScrapeLoop:
    """Drives the stats client on a fixed cadence. One task per instance."""

    def __init__(
        self,
        stats_client: StatsClient,
        registry: MetricRegistry,
        model_label: str,
        interval: float = 5.0
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if not model_label or not model_label.strip():
            raise ValueError("model label cannot be empty")
        self.stats_client = stats_client
        self.registry = registry
        self.model_label = model_label
        self.interval = interval
        self.last_snapshot: Optional[StatsSnapshot] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def scrape_once(self) -> bool:
        """
        Run one scrape tick.

        Returns:
            True if the registry was updated, False if the tick was skipped
        """
        try:
            snapshot = await self.stats_client.fetch()
        except Exception as e:
            logger.error("Error fetching llama.cpp stats",
                         url=self.stats_client.stats_url,
                         error=str(e),
                         error_type=type(e).__name__)
            return False

        update_from_snapshot(self.registry, snapshot, self.model_label)
        self.last_snapshot = snapshot
        logger.debug("Scrape completed", model=self.model_label)
        return True

    async def run(self):
        """Scrape every `interval` seconds until cancelled."""
        logger.info("Starting metrics collection",
                    url=self.stats_client.stats_url,
                    interval=self.interval)
        try:
            while True:
                await asyncio.sleep(self.interval)
                await self.scrape_once()
        finally:
            logger.info("Metrics collection stopped")

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def cancel(self):
        """Request the loop to stop without waiting for it."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self):
        """Cancel the loop and wait for it to finish."""
        task = self._task
        if task is None:
            return
        self.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
