"""The engine that keeps processing due jobs until asked to stop."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Mapping, Sequence

from dotenv import find_dotenv, load_dotenv

from tempus.config import AppConfig
from tempus.domain import ProcessJobUseCasePort
from tempus.errors import EnvError, TempusError
from tempus.processing import ProcessJobUseCase
from tempus.repository import JobMetadataRepository, JobRepository, connect_with_retry

logger = logging.getLogger(__name__)


class TempusEngine:
    """Runs the job processing loop."""

    def __init__(
        self,
        config: AppConfig | None = None,
        environ: Mapping[str, str] | None = None,
        error_delay: float = 5.0,
    ) -> None:
        self.config = config if config is not None else AppConfig.load(environ)
        self.environ = environ
        self.error_delay = error_delay

    async def run_once(self, usecase: ProcessJobUseCasePort) -> bool:
        """Run one processing pass; on error log it, pause and return False."""
        try:
            await usecase.execute()
        except TempusError as exc:
            logger.error("Error processing jobs: %r", exc)
            await asyncio.sleep(self.error_delay)
            return False
        return True

    async def start(self, shutdown: asyncio.Event | None = None) -> None:
        """Process jobs until the shutdown event is set, or until Ctrl-C."""
        logger.info("Starting Tempus Engine")
        database = await connect_with_retry(self.config, self.environ)
        usecase = ProcessJobUseCase(
            JobRepository(database), JobMetadataRepository(database), self.config
        )
        loop = asyncio.get_running_loop()
        handled = False
        if shutdown is None:
            shutdown = asyncio.Event()
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signal.SIGINT, self._on_signal, shutdown)
                handled = True

        logger.info("Engine started, processing jobs...")
        try:
            while not shutdown.is_set():
                step = asyncio.ensure_future(self.run_once(usecase))
                stop = asyncio.ensure_future(shutdown.wait())
                done, _ = await asyncio.wait({step, stop}, return_when=asyncio.FIRST_COMPLETED)
                if step not in done:
                    logger.warning("Shutdown signal received, stopping job processing")
                    step.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await step
                    break
                stop.cancel()
        finally:
            if handled:
                loop.remove_signal_handler(signal.SIGINT)
            database.dispose()
        logger.info("Tempus Engine shutdown complete")

    @staticmethod
    def _on_signal(shutdown: asyncio.Event) -> None:
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown.set()


def main(argv: Sequence[str] | None = None) -> int:
    """Start the job processing engine."""
    argparse.ArgumentParser(prog="tempus", description="Run the job scheduler.").parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        path = find_dotenv(usecwd=True)
        if not path:
            raise EnvError(".env file not found")
        load_dotenv(path)
        logger.info("tempus")
        asyncio.run(TempusEngine().start())
    except TempusError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0