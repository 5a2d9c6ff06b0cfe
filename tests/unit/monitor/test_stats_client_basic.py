"""Unit tests for the llama.cpp stats client."""

import asyncio
import json

import httpx
import pytest
from structlog.testing import capture_logs

from llamawatch.common.errors import BadStatusError, DecodeError, NetworkError
from llamawatch.monitor.stats_client import EngineStatus, StatsClient, StatsSnapshot


def run_async(coro):
    return asyncio.run(coro)


def make_client(handler) -> StatsClient:
    transport = httpx.MockTransport(handler)
    return StatsClient(
        "http://engine/v1/",
        timeout=3.0,
        client=httpx.AsyncClient(transport=transport),
    )


class TestEngineStatus:
    """Tests for EngineStatus.from_label."""

    @pytest.mark.parametrize("label,expected", [
        ("running", EngineStatus.RUNNING),
        ("loading", EngineStatus.LOADING),
        ("idle", EngineStatus.IDLE),
        ("RUNNING", EngineStatus.UNKNOWN),
        ("Running", EngineStatus.UNKNOWN),
        (" idle ", EngineStatus.UNKNOWN),
        ("unknown", EngineStatus.UNKNOWN),
        ("", EngineStatus.UNKNOWN),
        ("crashed", EngineStatus.UNKNOWN),
    ])
    def test_from_label(self, label, expected):
        assert EngineStatus.from_label(label) == expected


class TestStatsClient:
    """Tests for StatsClient.fetch."""

    def test_fetch_decodes_snapshot(self, engine_stats):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=engine_stats)

        snapshot = run_async(make_client(handler).fetch())

        assert str(requests[0].url) == "http://engine/v1/stats"
        assert requests[0].method == "GET"
        assert snapshot.performance.tokens_per_second == 42.5
        assert snapshot.memory.kv_cache_bytes == 256
        assert snapshot.batch.latency_ms == 5
        assert snapshot.system.engine_status == EngineStatus.RUNNING

    def test_missing_fields_default_to_zero(self):
        client = make_client(lambda request: httpx.Response(200, json={"system": {"threads": 2}}))

        snapshot = run_async(client.fetch())

        assert snapshot.performance.gpu_utilization == 0
        assert snapshot.performance.temperature == 0
        assert snapshot.memory.used_bytes == 0
        assert snapshot.system.threads == 2
        assert snapshot.system.engine_status == EngineStatus.UNKNOWN

    def test_non_2xx_raises_bad_status(self):
        client = make_client(lambda request: httpx.Response(500, text="engine exploded"))

        with pytest.raises(BadStatusError) as exc_info:
            run_async(client.fetch())

        assert exc_info.value.status_code == 500
        assert "engine exploded" in exc_info.value.body

    def test_malformed_json_raises_decode_error(self):
        client = make_client(lambda request: httpx.Response(200, text="{not json"))

        with pytest.raises(DecodeError):
            run_async(client.fetch())

    def test_wrong_shape_raises_decode_error(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"memory": {"used_bytes": "lots"}})
        )

        with pytest.raises(DecodeError):
            run_async(client.fetch())

    def test_transport_failure_raises_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            run_async(make_client(handler).fetch())

    def test_timeout_raises_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(NetworkError):
            run_async(make_client(handler).fetch())

    def test_no_retry_on_failure(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(BadStatusError):
            run_async(make_client(handler).fetch())

        assert len(calls) == 1

    def test_invariant_violations_logged_and_passed_through(self, engine_stats):
        engine_stats["memory"]["used_bytes"] = 8192
        client = make_client(lambda request: httpx.Response(200, content=json.dumps(engine_stats)))

        with capture_logs() as logs:
            snapshot = run_async(client.fetch())

        assert snapshot.memory.used_bytes == 8192
        warnings = [entry for entry in logs if entry["event"] == "Stats invariant violated"]
        assert len(warnings) == 1
        assert "used_bytes" in warnings[0]["violation"]


class TestStatsSnapshot:
    """Tests for StatsSnapshot.invariant_violations."""

    def test_consistent_snapshot_has_no_violations(self, engine_stats):
        assert StatsSnapshot.model_validate(engine_stats).invariant_violations() == []

    def test_context_overflow_is_reported(self, engine_stats):
        engine_stats["model"]["context_size"] = 4096

        violations = StatsSnapshot.model_validate(engine_stats).invariant_violations()

        assert len(violations) == 1
        assert "context_size" in violations[0]
