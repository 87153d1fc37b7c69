"""Main entry point - runs the treasury scheduler and the trigger API."""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from walletadapter import jobs
from walletadapter.api.app import create_app
from walletadapter.config import get_settings
from walletadapter.context import TreasuryContext, build_context
from walletadapter.ledger.database import close_db, init_db
from walletadapter.scheduler import JobRunner, TreasuryScheduler

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # APScheduler logs every run at INFO
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)


class Application:
    """Wallet adapter process: cron loops, trigger API and their shared clients."""

    def __init__(self):
        self.settings = get_settings()
        self.runner = JobRunner()
        self.context: Optional[TreasuryContext] = None
        self.scheduler: Optional[TreasuryScheduler] = None
        self.server: Optional[uvicorn.Server] = None
        self._stopping = asyncio.Event()

    async def start(self):
        configure_logging(self.settings.debug)
        logger.info(f"Starting wallet adapter ({self.settings.sentry_environment})")
        logger.debug(f"Settings: {self.settings.get_safe_dict()}")

        await init_db()
        self.context = build_context(self.settings)
        await self._bootstrap_hot_wallets()

        self.scheduler = TreasuryScheduler(self.context, self.runner)
        self.scheduler.start()

        serve = asyncio.create_task(self._serve_api(), name="api")
        stop = asyncio.create_task(self._stopping.wait(), name="stop")
        done, _ = await asyncio.wait({serve, stop}, return_when=asyncio.FIRST_COMPLETED)

        if serve in done and serve.exception() is not None:
            logger.error(f"API server exited: {serve.exception()}")
        if self.server is not None:
            self.server.should_exit = True
        stop.cancel()
        await asyncio.gather(serve, stop, return_exceptions=True)

        await self._cleanup()

    async def _bootstrap_hot_wallets(self):
        """Provision missing hot wallets. A failure here must not keep the loops down."""
        try:
            created = await jobs.bootstrap_hot_wallets(self.context)
        except Exception as e:
            logger.error(f"Hot wallet bootstrap failed: {e}")
            return
        if created:
            logger.info(f"Created {created} hot wallet(s)")

    async def _serve_api(self):
        app = create_app(self.context, self.runner)
        config = uvicorn.Config(
            app,
            host=self.settings.app_host,
            port=self.settings.app_port,
            log_level="debug" if self.settings.debug else "info",
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Trigger API listening on {self.settings.app_host}:{self.settings.app_port}")
        await self.server.serve()

    async def _cleanup(self):
        logger.info("Stopping wallet adapter...")
        if self.scheduler is not None:
            self.scheduler.shutdown()
        await self.runner.drain()
        await close_db()
        logger.info("Wallet adapter stopped")

    def shutdown(self):
        logger.info("Shutdown requested")
        self._stopping.set()


def main():
    """Console script entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
