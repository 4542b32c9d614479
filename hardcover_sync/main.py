import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .state import StateManager
from .gate import FailureGate
from .throttle import RequestThrottle
from .clients.hardcover_client import HardcoverClient
from .notifier import NotificationKind, Notifier
from .registry import SyncRegistry
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
if settings.DEBUG:
    logging.getLogger("hardcover_sync").setLevel(logging.DEBUG)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")


class SyncService:
    def __init__(self):
        self.state_manager = StateManager(settings.STATE_PATH)
        self.gate = FailureGate()
        self.notifier = Notifier()
        self.client = HardcoverClient(
            gate=self.gate,
            throttle=RequestThrottle(settings.RATE_LIMIT_BUFFER),
        )
        self.registry = SyncRegistry(self.client, self.state_manager, self.notifier)

        # Link shared objects to server module
        server.registry = self.registry
        server.gate = self.gate
        server.notifier = self.notifier

    async def setup(self):
        if not settings.configured:
            logger.warning("Hardcover sync is disabled or has no API token; books will not sync")
            return
        ok, message = await self.client.test_connection()
        if ok:
            self.notifier.notify(NotificationKind.CONNECTED, "Connected to Hardcover", level="success")
        else:
            self.notifier.notify(NotificationKind.SYNC_FAILED, f"Failed to connect: {message}", level="error")

    async def start(self):
        await self.setup()

        if not settings.HTTP_SERVER_ENABLED:
            logger.error("HTTP_SERVER_ENABLED is false, nothing to drive the sync service")
            return

        config = uvicorn.Config(server.app, host=settings.HTTP_SERVER_HOST, port=settings.HTTP_SERVER_PORT,
                                log_level="warning")
        try:
            await uvicorn.Server(config).serve()
        except asyncio.CancelledError:
            pass
        finally:
            await self.registry.close_all()
            await self.client.aclose()
            self.state_manager.save()


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
