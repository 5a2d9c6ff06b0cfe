"""Unit tests for the exporter entrypoint."""

import asyncio
import socket

import pytest

from llamawatch.common.config import ExporterSettings
from llamawatch.monitor import main as exporter_main
from llamawatch.monitor.main import LlamaCppExporter


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    monkeypatch.setattr(exporter_main, "configure_logging", lambda level="INFO": None)


def test_exporter_wires_settings():
    settings = ExporterSettings(model="llama-3b", scrape_interval=2, exporter_addr="127.0.0.1:0")

    exporter = LlamaCppExporter(settings)

    assert exporter.scrape_loop.model_label == "llama-3b"
    assert exporter.scrape_loop.interval == 2
    assert exporter.stats_client.stats_url.endswith("/engines/llama.cpp/v1/stats")


def test_bind_failure_exits_with_one():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    port = blocker.getsockname()[1]
    try:
        exporter = LlamaCppExporter(ExporterSettings(exporter_addr=f"127.0.0.1:{port}"))
        assert run_async(exporter.run()) == 1
    finally:
        blocker.close()


def test_clean_shutdown_exits_with_zero():
    exporter = LlamaCppExporter(ExporterSettings(exporter_addr="127.0.0.1:0", scrape_interval=60))

    async def scenario():
        task = asyncio.create_task(exporter.run())
        await asyncio.sleep(0.2)
        assert exporter.scrape_loop.running
        exporter.server.shutdown()
        return await asyncio.wait_for(task, timeout=15)

    assert run_async(scenario()) == 0
    assert not exporter.scrape_loop.running


def test_invalid_configuration_exits_with_one(monkeypatch):
    monkeypatch.setenv("LLAMACPP_SCRAPE_INTERVAL", "soon")

    assert run_async(exporter_main.main()) == 1


def test_main_runs_exporter(monkeypatch):
    seen = []

    async def fake_run(self):
        seen.append(self.settings)
        return 0

    monkeypatch.setenv("LLAMACPP_MODEL", "tiny")
    monkeypatch.setattr(LlamaCppExporter, "run", fake_run)

    assert run_async(exporter_main.main()) == 0
    assert seen[0].model == "tiny"
