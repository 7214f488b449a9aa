"""
Main entry point for the Postgresql operator.

Builds the configured store backend, then runs the controller and the HTTP
API until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import APIServer
from backoff import Backoff
from config import Config, get_config
from controller import Controller, ControllerConfig
from db import DatabaseManager
from events import EventBus
from kube import KubernetesStore
from reconciler import Reconciler
from store import InMemoryStore, ResourceStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def create_store(config: Config, event_bus: EventBus) -> ResourceStore:
    """Create and connect the configured store backend."""
    backend = config.store.backend

    if backend == "postgres":
        db_config = config.database
        db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=event_bus,
        )
        await db.connect()
        await db.initialize_schema()
        return db

    if backend == "kubernetes":
        kube = KubernetesStore(
            namespace=config.kubernetes.namespace, event_bus=event_bus
        )
        kube.connect(in_cluster=config.kubernetes.in_cluster)
        return kube

    logger.warning("Using the in-memory store; state is lost on restart")
    return InMemoryStore(event_bus=event_bus)


class Application:
    """Main application that wires the store, controller and API together."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ResourceStore] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.api: Optional[APIServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info(f"Initializing Postgresql operator ({self.config.store.backend} store)")
        logging.getLogger().setLevel(self.config.api.log_level.upper())

        self.event_bus = EventBus()
        self.store = await create_store(self.config, self.event_bus)

        ctrl_config = self.config.controller
        reconciler = Reconciler(
            self.store,
            requeue_interval=ctrl_config.requeue_interval,
            finalizer=ctrl_config.finalizer,
            backoff=Backoff(
                base_delay=ctrl_config.backoff_base_delay,
                max_delay=ctrl_config.backoff_max_delay,
                jitter_factor=ctrl_config.backoff_jitter_factor,
            ),
        )
        self.controller = Controller(
            store=self.store,
            reconciler=reconciler,
            config=ControllerConfig(
                resync_interval=ctrl_config.resync_interval,
                max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
                backoff_base_delay=ctrl_config.backoff_base_delay,
                backoff_max_delay=ctrl_config.backoff_max_delay,
                backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
            ),
            event_bus=self.event_bus,
        )

        if self.config.api.enabled:
            self.api = APIServer(
                self.store,
                event_bus=self.event_bus,
                controller=self.controller,
                host=self.config.api.host,
                port=self.config.api.port,
                log_level=self.config.api.log_level,
                cors_origins=(
                    self.config.api.cors_origins
                    if self.config.api.cors_enabled
                    else None
                ),
            )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting Postgresql operator")

        tasks: List[asyncio.Task] = [asyncio.create_task(self.controller.start())]
        if isinstance(self.store, KubernetesStore):
            tasks.append(asyncio.create_task(self.store.watch()))
        if self.api:
            tasks.append(asyncio.create_task(self.api.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Postgresql operator")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.controller:
            await self.controller.stop()

        if isinstance(self.store, KubernetesStore):
            self.store.stop_watch()
        elif isinstance(self.store, DatabaseManager):
            await self.store.close()

        logger.info("Postgresql operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
