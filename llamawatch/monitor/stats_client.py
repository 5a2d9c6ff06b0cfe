"""Client for the llama.cpp /stats endpoint."""

from enum import IntEnum
from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from llamawatch.common.errors import BadStatusError, DecodeError, NetworkError, body_snippet

logger = structlog.get_logger()


class EngineStatus(IntEnum):
    """Engine status as exported on llamacpp_status."""
    UNKNOWN = 0
    IDLE = 1
    LOADING = 2
    RUNNING = 3

    @classmethod
    def from_label(cls, label: str) -> "EngineStatus":
        """Map the engine's status string exactly; any other label is UNKNOWN."""
        return _STATUS_BY_LABEL.get(label, cls.UNKNOWN)


_STATUS_BY_LABEL = {
    "idle": EngineStatus.IDLE,
    "loading": EngineStatus.LOADING,
    "running": EngineStatus.RUNNING,
}


class MemoryStats(BaseModel):
    used_bytes: int = 0
    total_bytes: int = 0
    kv_cache_bytes: int = 0
    kv_cache_max_bytes: int = 0


class PerformanceStats(BaseModel):
    tokens_per_second: float = 0.0
    cpu_utilization: float = 0.0
    # Absent when the engine runs on CPU only
    gpu_utilization: float = 0.0
    temperature: float = 0.0


class ModelStats(BaseModel):
    name: str = ""
    size_bytes: int = 0
    parameters: int = 0
    context_size: int = 0
    max_context_size: int = 0


class BatchStats(BaseModel):
    size: int = 0
    optimal_size: int = 0
    latency_ms: float = 0.0


class SystemStats(BaseModel):
    threads: int = 0
    status: str = ""

    @property
    def engine_status(self) -> EngineStatus:
        return EngineStatus.from_label(self.status)


class StatsSnapshot(BaseModel):
    """One decoded /stats response. Built anew on every scrape."""

    memory: MemoryStats = Field(default_factory=MemoryStats)
    performance: PerformanceStats = Field(default_factory=PerformanceStats)
    model: ModelStats = Field(default_factory=ModelStats)
    batch: BatchStats = Field(default_factory=BatchStats)
    system: SystemStats = Field(default_factory=SystemStats)

    def invariant_violations(self) -> List[str]:
        """
        Describe any capacity invariants the engine reported inconsistently.

        Violations never fail a scrape; they are logged and passed through so
        anomalies stay visible in the exported series.
        """
        violations = []
        if self.memory.used_bytes > self.memory.total_bytes:
            violations.append(
                f"memory.used_bytes ({self.memory.used_bytes}) exceeds "
                f"memory.total_bytes ({self.memory.total_bytes})"
            )
        if self.memory.kv_cache_bytes > self.memory.kv_cache_max_bytes:
            violations.append(
                f"memory.kv_cache_bytes ({self.memory.kv_cache_bytes}) exceeds "
                f"memory.kv_cache_max_bytes ({self.memory.kv_cache_max_bytes})"
            )
        if self.model.context_size > self.model.max_context_size:
            violations.append(
                f"model.context_size ({self.model.context_size}) exceeds "
                f"model.max_context_size ({self.model.max_context_size})"
            )
        return violations


class StatsClient:
    """Fetches StatsSnapshot records from the engine. Does not retry."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the stats client.

        Args:
            base_url: Engine base URL; "/stats" is appended
            timeout: Per-request timeout in seconds
            client: Optional pre-configured HTTP client (for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def stats_url(self) -> str:
        return f"{self.base_url}/stats"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def fetch(self) -> StatsSnapshot:
        """
        Pull a single snapshot from the engine.

        Returns:
            Decoded StatsSnapshot

        Raises:
            NetworkError: On transport failure or timeout
            BadStatusError: On a non-2xx response
            DecodeError: On malformed or mis-shaped JSON
        """
        client = self._get_client()
        try:
            response = await client.get(self.stats_url, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise NetworkError(f"failed to fetch stats: {e}") from e

        if not response.is_success:
            raise BadStatusError(
                response.status_code,
                body_snippet(response.text),
                url=self.stats_url,
            )

        try:
            snapshot = StatsSnapshot.model_validate_json(response.content)
        except ValidationError as e:
            raise DecodeError(f"failed to decode stats: {e}") from e

        for violation in snapshot.invariant_violations():
            logger.warning("Stats invariant violated", violation=violation)

        return snapshot

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
