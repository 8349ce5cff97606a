"""Process entry point: chain workers plus the HTTP API in one event loop."""

import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from custody.api.app import create_app
from custody.config import Settings, get_settings
from custody.errors import ConfigurationError
from custody.ledger.database import close_db, get_session_factory, init_db
from custody.services import CustodyServices, build_services
from custody.workers import WorkerPool

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    if settings.debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


class Application:
    """Owns the services, the worker pool and the uvicorn server."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.services: Optional[CustodyServices] = None
        self.workers: Optional[WorkerPool] = None
        self._stopping = asyncio.Event()

    def check_config(self) -> None:
        """Refuse to start without the master password or a chain's RPC URL.

        Raises:
            ConfigurationError: naming the first missing setting
        """
        settings = self.settings
        settings.require("wallet_master_password")
        for chain, network in settings.chain_pairs:
            settings.require_rpc(chain, network)

        if not settings.deposit_seed_encrypted:
            logger.warning("DEPOSIT_SEED_ENCRYPTED not set - sweep signing disabled")
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET not set - deposit webhooks will be refused")
        if settings.is_production and not settings.admin_token:
            logger.warning("ADMIN_TOKEN not set in production - admin endpoints are open")

    async def start(self) -> None:
        """Run until ``shutdown`` is called, then tear everything down."""
        configure_logging(self.settings)
        logger.info(f"Custody service starting ({self.settings.environment})")

        self.check_config()
        await init_db()

        self.services = build_services(self.settings, get_session_factory())
        self.workers = WorkerPool(self.services)
        self.workers.start()
        server = asyncio.create_task(self._run_api(), name="api")

        await self._stopping.wait()

        # in-flight worker events complete before the API stops answering
        await self.workers.stop()
        server.cancel()
        await asyncio.gather(server, return_exceptions=True)
        await self._cleanup()

    async def _run_api(self) -> None:
        host, port = self.settings.api_host, self.settings.api_port
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self.services, self.workers),
                host=host,
                port=port,
                log_level="debug" if self.settings.debug else "info",
            )
        )
        logger.info(f"API listening on {host}:{port}")
        try:
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server stopped")
        except Exception as e:
            logger.error(f"API server failed: {e}")
            raise

    async def _cleanup(self) -> None:
        if self.services is not None:
            await self.services.close()
        await close_db()
        logger.info("Shutdown complete")

    def shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._stopping.set()


def main() -> None:
    """Console script ``custody``."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
