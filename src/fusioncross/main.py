"""Main entry point - runs the swap coordinator, expiry sweeper and API."""

import asyncio
import logging
import signal
from pathlib import Path

import uvicorn

from fusioncross.api.app import create_app
from fusioncross.config import get_settings
from fusioncross.errors import SwapError
from fusioncross.registry.database import close_db, init_db
from fusioncross.swaps.service import build_coordinator

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the coordinator, the sweeper and the API."""

    def __init__(self):
        self.settings = get_settings()
        self.coordinator = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting fusioncross...")
        logger.info(f"Environment: {self.settings.environment}")
        if self.settings.dry_run:
            logger.warning("DRY_RUN enabled - using simulated chains")

        # SQLite needs its directory
        if self.settings.database_url.startswith("sqlite") and "./data/" in self.settings.database_url:
            Path("data").mkdir(exist_ok=True)

        # Initialize database
        await init_db()
        logger.info("Database initialized")

        self.coordinator = build_coordinator(self.settings)
        resumed = await self.coordinator.resume()
        logger.info(f"Coordinator ready, {resumed} swaps resumed")

        tasks = [
            asyncio.create_task(self._run_sweeper()),
            asyncio.create_task(self._run_api()),
        ]
        logger.info("Sweeper and API tasks created")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        # Cancel all tasks
        for task in tasks:
            task.cancel()

        # Wait for tasks to complete
        await asyncio.gather(*tasks, return_exceptions=True)

        # Cleanup
        await self._cleanup()

    async def _run_sweeper(self):
        """Periodically expire swaps past their timelock."""
        interval = self.settings.sweeper_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.coordinator.expire_due()
                except SwapError as e:
                    logger.error(f"Sweeper error: {e.message}")
        except asyncio.CancelledError:
            logger.info("Sweeper cancelled")

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(self.coordinator)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")

        if self.coordinator is not None:
            await self.coordinator.shutdown()

        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application()

    # Setup signal handlers
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
