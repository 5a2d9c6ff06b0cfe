"""Configuration for the exporter and RAG service using pydantic-settings.

The exporter reads variables prefixed with LLAMACPP_ (e.g. LLAMACPP_BASE_URL),
the RAG service reads variables prefixed with RAG_, plus MODEL_RUNNER_URL for
the model runner endpoint shared with the engine integration.

Durations accept Go-style strings ("5s", "500ms", "1m30s") or plain seconds.
"""

import re
from typing import Tuple, Union

import structlog
from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


DEFAULT_ENGINE_URL = "http://model-runner.docker.internal/engines/llama.cpp/v1"
DEFAULT_OTLP_ENDPOINT = "jaeger:4318"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Args:
        value: Number of seconds, or a string such as "5s", "250ms", "1m30s"

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a recognised duration
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    if not text:
        raise ValueError("duration cannot be empty")

    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


def parse_listen_address(addr: str) -> Tuple[str, int]:
    """
    Split a "[host]:port" listen address.

    An empty host (":9100") binds all interfaces. IPv6 hosts are bracketed
    ("[::1]:9100") and returned without the brackets.
    """
    host, sep, port = addr.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {addr!r}")
    port_number = int(port)
    if not 0 <= port_number <= 65535:
        raise ValueError(f"port out of range in listen address: {addr!r}")
    return host or "0.0.0.0", port_number


class ExporterSettings(BaseSettings):
    """llama.cpp exporter configuration from LLAMACPP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LLAMACPP_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Engine base URL; /stats is appended for scrapes
    base_url: str = DEFAULT_ENGINE_URL

    # Value of the `model` label on every exported series
    model: str = "llama"

    # Listen address of the /metrics endpoint
    exporter_addr: str = ":9100"

    # Seconds between scrapes
    scrape_interval: float = 5.0

    # Per-request timeout for /stats, in seconds
    client_timeout: float = 3.0

    log_level: str = "INFO"

    @field_validator("scrape_interval", "client_timeout", mode="before")
    @classmethod
    def validate_duration(cls, v):
        """Accept Go-style duration strings."""
        return parse_duration(v)

    @field_validator("scrape_interval", "client_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("duration must be positive")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        """The model label must be non-empty."""
        if not v or not v.strip():
            raise ValueError("model label cannot be empty")
        return v

    @field_validator("exporter_addr")
    @classmethod
    def validate_exporter_addr(cls, v: str) -> str:
        parse_listen_address(v)
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class RAGSettings(BaseSettings):
    """RAG service configuration from RAG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RAG_",
        case_sensitive=False,
        protected_namespaces=(),
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # LLM engine
    # -------------------------------------------------------------------------
    model_runner_url: str = Field(
        default=DEFAULT_ENGINE_URL,
        validation_alias=AliasChoices("MODEL_RUNNER_URL", "RAG_MODEL_RUNNER_URL"),
    )
    llm_model: str = "ai/llama3.2"
    llm_timeout: float = 120.0

    # -------------------------------------------------------------------------
    # Vector database
    # -------------------------------------------------------------------------
    vector_db_url: str = "http://vectordb:8000"
    vector_db_timeout: float = 30.0

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------
    upload_dir: str = "./uploads"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    max_upload_bytes: int = 10 << 20

    # Number of chunks retrieved as prompt context
    context_chunks: int = 3

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------
    monitoring_enabled: bool = True
    collection_interval: float = 15.0
    stats_timeout: float = 3.0
    otlp_endpoint: str = DEFAULT_OTLP_ENDPOINT

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @field_validator(
        "llm_timeout", "vector_db_timeout", "collection_interval", "stats_timeout",
        mode="before",
    )
    @classmethod
    def validate_duration(cls, v):
        return parse_duration(v)

    @field_validator("llm_model")
    @classmethod
    def validate_llm_model(cls, v: str) -> str:
        """Also the engine scrape loop's model label, so it must be non-empty."""
        if not v or not v.strip():
            raise ValueError("model label cannot be empty")
        return v

    @field_validator("model_runner_url", "vector_db_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("chunk_size", "max_upload_bytes", "context_chunks")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_chunking(self) -> "RAGSettings":
        """Overlap must satisfy 0 <= overlap < chunk_size."""
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap cannot be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


def load_exporter_settings() -> ExporterSettings:
    """
    Load exporter configuration from environment variables.

    Raises:
        pydantic.ValidationError: If a variable is invalid
    """
    settings = ExporterSettings()
    logger.info("Exporter configuration loaded",
                base_url=settings.base_url,
                model=settings.model,
                exporter_addr=settings.exporter_addr,
                scrape_interval=settings.scrape_interval,
                client_timeout=settings.client_timeout)
    return settings


def load_rag_settings() -> RAGSettings:
    """
    Load RAG service configuration from environment variables.

    Raises:
        pydantic.ValidationError: If a variable is invalid
    """
    settings = RAGSettings()
    logger.info("RAG configuration loaded",
                model_runner_url=settings.model_runner_url,
                vector_db_url=settings.vector_db_url,
                upload_dir=settings.upload_dir,
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                monitoring_enabled=settings.monitoring_enabled)
    return settings
