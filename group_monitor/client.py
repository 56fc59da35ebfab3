"""
Chat client boundary.

The chat-protocol transport (pairing, session auth, browser automation) is
provided by a separate package and loaded from the ``CLIENT_FACTORY``
setting. A factory takes the ``EventChannel`` and returns a ``ChatClient``;
the client publishes lifecycle and message events onto that channel.
"""

import importlib
import logging
from typing import Callable, Iterable, Optional, Protocol

from group_monitor.events import (
    Authenticated,
    ChannelEvent,
    Disconnected,
    EventChannel,
    InboundMessage,
    PairingRequired,
    Ready,
    normalize_inbound,
)

logger = logging.getLogger(__name__)


class ClientUnavailableError(Exception):
    """The chat client cannot be constructed in this environment."""


class ChatClient(Protocol):
    async def initialize(self) -> None: ...

    async def logout(self) -> None: ...

    async def destroy(self) -> None: ...


ClientFactory = Callable[[EventChannel], ChatClient]


def load_client_factory(path: str) -> ClientFactory:
    """
    Resolve a ``module:callable`` path to a client factory.

    Raises:
        ClientUnavailableError: path is empty, or the module or callable
            cannot be imported (e.g. a missing native dependency).
    """
    if not path:
        raise ClientUnavailableError("No chat client configured")

    module_name, _, attr = path.partition(":")
    if not attr:
        raise ClientUnavailableError(f"Invalid client factory path {path!r}, expected 'module:callable'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ClientUnavailableError(f"Cannot import chat client module {module_name}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ClientUnavailableError(f"{path} is not a callable client factory")

    logger.info(f"Loaded chat client factory {path}")
    return factory


class SimulatedChatClient:
    """
    In-process chat client publishing scripted events.

    ``initialize`` publishes ``script`` (by default: pairing code,
    authenticated, ready). Used for operational testing without a real
    transport.
    """

    def __init__(
        self,
        channel: EventChannel,
        script: Optional[Iterable[ChannelEvent]] = None,
        fail_initialize: bool = False,
        fail_logout: bool = False,
    ):
        self.channel = channel
        self.script = list(script) if script is not None else [
            PairingRequired(payload="SIMULATED-PAIRING-CODE"),
            Authenticated(),
            Ready(),
        ]
        self.fail_initialize = fail_initialize
        self.fail_logout = fail_logout
        self.initialize_calls = 0
        self.logout_calls = 0
        self.destroyed = False

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.fail_initialize:
            raise RuntimeError("Simulated client failed to initialize")
        for event in self.script:
            await self.channel.publish(event)

    async def logout(self) -> None:
        self.logout_calls += 1
        if self.fail_logout:
            raise RuntimeError("Simulated client failed to log out")
        await self.channel.publish(Disconnected(reason="LOGOUT"))

    async def destroy(self) -> None:
        self.destroyed = True

    async def emit_message(self, message, chat=None, contact=None) -> None:
        """Publish a platform-shaped message, normalized at this boundary."""
        await self.channel.publish(InboundMessage(raw=normalize_inbound(message, chat, contact)))


def simulated_client_factory(channel: EventChannel) -> SimulatedChatClient:
    """Factory usable as ``CLIENT_FACTORY=group_monitor.client:simulated_client_factory``."""
    return SimulatedChatClient(channel)
