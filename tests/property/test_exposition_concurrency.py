"""
Concurrency tests for scraping and exposition.

Scrapes keep updating the registry while /metrics is read; every read must be
a complete, parseable exposition.
"""

import threading

from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families

from llamawatch.monitor.exporter import create_metrics_app
from llamawatch.monitor.metrics import MetricRegistry
from llamawatch.monitor.scraper import update_from_snapshot
from llamawatch.monitor.stats_client import StatsSnapshot

ITERATIONS = 1000


def test_concurrent_scrape_and_render(engine_stats):
    registry = MetricRegistry()
    client = TestClient(create_metrics_app(registry))
    stop = threading.Event()
    errors = []

    def scrape():
        tick = 0
        try:
            while not stop.is_set():
                engine_stats["performance"]["tokens_per_second"] = float(tick)
                engine_stats["batch"]["latency_ms"] = float(tick % 50)
                update_from_snapshot(registry, StatsSnapshot.model_validate(engine_stats), "llama")
                tick += 1
        except Exception as e:
            errors.append(e)

    update_from_snapshot(registry, StatsSnapshot.model_validate(engine_stats), "llama")
    writer = threading.Thread(target=scrape)
    writer.start()
    try:
        for _ in range(ITERATIONS):
            response = client.get("/metrics")
            assert response.status_code == 200
            assert response.text
            families = {family.name for family in text_string_to_metric_families(response.text)}
            assert "llamacpp_tokens_per_second" in families
            assert "llamacpp_batch_latency_seconds" in families
    finally:
        stop.set()
        writer.join(timeout=10)

    assert errors == []


def test_histogram_count_never_decreases_between_reads(engine_stats):
    registry = MetricRegistry()
    stop = threading.Event()
    labels = {"model": "llama"}
    snapshot = StatsSnapshot.model_validate(engine_stats)

    def scrape():
        while not stop.is_set():
            update_from_snapshot(registry, snapshot, "llama")

    writer = threading.Thread(target=scrape)
    writer.start()
    try:
        last = 0
        for _ in range(ITERATIONS):
            count = registry.sample_value("llamacpp_batch_latency_seconds_count", labels) or 0
            assert count >= last
            last = count
    finally:
        stop.set()
        writer.join(timeout=10)
