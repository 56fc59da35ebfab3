"""
Wires storage, the connection controller, the ingestion pipeline and the
chat client together, and runs the event dispatcher.
"""

import asyncio
import logging
from typing import Optional

from group_monitor.client import ChatClient, ClientFactory, load_client_factory
from group_monitor.config import Settings
from group_monitor.connection import ConnectionController, ConnectionPhase, InvalidTransitionError
from group_monitor.events import ChannelEvent, EventChannel, InboundMessage
from group_monitor.ingestion import IngestionPipeline
from group_monitor.storage import FileStorage, StorageError

logger = logging.getLogger(__name__)

ERROR_CONTEXT = "message_handler"


class MonitorRuntime:
    """
    One per process. ``start()`` and ``stop()`` are called from the app
    lifespan.
    """

    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None):
        self.settings = settings
        self.storage = FileStorage(
            settings.DATA_DIR,
            message_retention=settings.MESSAGE_RETENTION,
            error_retention=settings.ERROR_RETENTION,
        )
        self.controller = ConnectionController(reinit_delay=settings.REINIT_DELAY_SECONDS)
        self.pipeline = IngestionPipeline(self.storage, self.controller)
        self.channel = EventChannel()
        self.client: Optional[ChatClient] = None
        self._client_factory = client_factory
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._client_start_task: Optional[asyncio.Task] = None

        self.controller.set_reinitializer(self._reinitialize)

    async def start(self) -> None:
        try:
            self.storage.initialize()
        except StorageError as e:
            logger.error(f"Storage initialization error: {e}")
        self.controller.reconcile_message_count(self.storage.count_messages())

        self._dispatcher_task = asyncio.create_task(self.run_dispatcher())

        delay = self.settings.CLIENT_INIT_DELAY_SECONDS
        if delay > 0:
            self._client_start_task = asyncio.create_task(self._start_client_later(delay))
        else:
            await self.start_client()

    async def stop(self) -> None:
        for task in (self._client_start_task, self._dispatcher_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.controller.shutdown()
        if self.client is not None:
            try:
                await self.client.destroy()
            except Exception as e:
                logger.error(f"Chat client destroy failed: {e}")
        logger.info("Runtime stopped")

    # =========================================================================
    # Chat client
    # =========================================================================

    async def _start_client_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.start_client()

    async def start_client(self, fallback_on_failure: bool = True) -> None:
        """
        Construct and initialize the chat client.

        If the client cannot be constructed, fallback mode is engaged. If it
        fails to initialize, the phase becomes Failed, and fallback is
        engaged only when ``fallback_on_failure`` is set.
        """
        logger.info("Initializing chat client...")
        try:
            factory = self._client_factory or load_client_factory(self.settings.CLIENT_FACTORY)
            client = factory(self.channel)
        except Exception as e:
            # ClientUnavailableError, or the transport's own import/setup errors
            logger.warning(f"Chat client unavailable: {e}")
            self.storage.log_error(e, context="client_initialization")
            self._engage_fallback(str(e))
            return

        self.client = client
        self.controller.attach_client(client)
        try:
            await client.initialize()
        except Exception as e:
            logger.error(f"Chat client initialization failed: {e}")
            self.storage.log_error(e, context="client_initialization")
            try:
                self.controller.mark_failed(str(e))
            except InvalidTransitionError as te:
                logger.warning(f"Could not mark connection failed: {te}")
                return
            if fallback_on_failure:
                self._engage_fallback(str(e))

    def _engage_fallback(self, reason: str) -> None:
        try:
            self.controller.engage_fallback(reason)
        except InvalidTransitionError as e:
            logger.warning(f"Cannot engage fallback mode: {e}")

    async def _reinitialize(self) -> None:
        if self.client is not None:
            try:
                await self.client.destroy()
            except Exception as e:
                logger.warning(f"Destroying previous chat client failed: {e}")
            self.client = None
            self.controller.attach_client(None)
        await self.start_client(fallback_on_failure=False)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, event: ChannelEvent) -> None:
        """Route one channel event. Never raises."""
        try:
            if isinstance(event, InboundMessage):
                self.pipeline.ingest(event.raw)
            else:
                self.controller.handle_event(event)
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__}: {e}")
            self.storage.log_error(e, context=ERROR_CONTEXT)

    async def process_pending(self) -> int:
        """Dispatch every queued event now. Returns how many were handled."""
        events = self.channel.drain()
        for event in events:
            await self.dispatch(event)
        return len(events)

    async def run_dispatcher(self) -> None:
        logger.info("Event dispatcher started")
        while True:
            event = await self.channel.get()
            try:
                await self.dispatch(event)
            finally:
                self.channel.task_done()

    @property
    def phase(self) -> ConnectionPhase:
        return self.controller.phase
