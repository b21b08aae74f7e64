"""
Main worker application that serves the collector API
"""
import asyncio
import signal
import sys
from typing import List

import uvicorn

from .config import settings
from .main import app
from .logging_config import setup_logging

logger = setup_logging(__name__)


class WorkerApplication:
    """Main worker application manager"""

    def __init__(self):
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()
        self.server: uvicorn.Server = None

    async def start_api_server(self):
        """Start the FastAPI server; its lifespan resumes interrupted tasks"""
        config = uvicorn.Config(
            app,
            host=settings.API_HOST,
            port=settings.API_PORT,
            log_level=settings.LOG_LEVEL.lower(),
            access_log=False,
        )
        self.server = uvicorn.Server(config)
        await self.server.serve()
        self.shutdown_event.set()

    async def start(self):
        """Start all services"""
        logger.info(f"Starting {settings.APP_NAME} worker")

        try:
            api_task = asyncio.create_task(self.start_api_server(), name="api-server")
            self.tasks = [api_task]

            await self.shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """Stop all services"""
        logger.info(f"Stopping {settings.APP_NAME} worker")

        if self.server is not None:
            self.server.should_exit = True

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        logger.info("Worker application stopped")

    def signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.shutdown_event.set()


async def main():
    """Main entry point"""
    worker = WorkerApplication()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, worker.signal_handler)

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
