"""llama.cpp exporter entrypoint."""

import asyncio
import sys

import structlog
from pydantic import ValidationError

from llamawatch.common.config import ExporterSettings, load_exporter_settings
from llamawatch.common.errors import ExporterStartupError
from llamawatch.common.log import configure_logging
from llamawatch.monitor.exporter import ExpositionServer
from llamawatch.monitor.metrics import MetricRegistry
from llamawatch.monitor.scraper import ScrapeLoop
from llamawatch.monitor.stats_client import StatsClient

logger = structlog.get_logger()


class LlamaCppExporter:
    """Scrapes engine statistics and serves them on /metrics."""

    def __init__(self, settings: ExporterSettings):
        self.settings = settings
        self.registry = MetricRegistry()
        self.stats_client = StatsClient(settings.base_url, timeout=settings.client_timeout)
        self.scrape_loop = ScrapeLoop(
            self.stats_client,
            self.registry,
            model_label=settings.model,
            interval=settings.scrape_interval,
        )
        self.server = ExpositionServer(self.registry, settings.exporter_addr)

    async def run(self) -> int:
        """Run until the server exits. Returns the process exit code."""
        try:
            self.server.bind()
        except ExporterStartupError as e:
            logger.error("Exporter startup failed", error=str(e))
            return 1

        self.scrape_loop.start()
        try:
            await self.server.serve()
        except Exception as e:
            logger.error("Exporter failed", error=str(e), exc_info=True)
            return 1
        finally:
            await self.scrape_loop.stop()
            await self.stats_client.close()

        return 0


async def main() -> int:
    """Main entrypoint."""
    configure_logging()
    try:
        settings = load_exporter_settings()
    except ValidationError as e:
        logger.error("Invalid exporter configuration", error=str(e))
        return 1

    configure_logging(settings.log_level)
    logger.info("Starting llama.cpp exporter",
                base_url=settings.base_url,
                model=settings.model,
                exporter_addr=settings.exporter_addr,
                scrape_interval=settings.scrape_interval,
                client_timeout=settings.client_timeout)

    exporter = LlamaCppExporter(settings)
    return await exporter.run()


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
