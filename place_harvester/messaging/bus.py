"""
In-process message bus joining the orchestrator and the panel.

Both contexts live on one event loop but may only talk through this bus.
Every message is serialised to JSON and parsed back, so neither side ever
holds a reference to the other's objects.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from place_harvester.utils.errors import MessageDeliveryError, handle_error
from place_harvester.utils.logging import get_logger


Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _transport(message: Any) -> Any:
    """Serialise and re-parse one message."""
    try:
        return json.loads(json.dumps(message, ensure_ascii=False))
    except (TypeError, ValueError) as e:
        raise MessageDeliveryError("Message is not serialisable", {"error": str(e)})


class MessageBus:
    """
    Command channel (panel -> orchestrator, request/response) and event
    channel (orchestrator -> panel, fire and forget).

    Events are delivered on their own task so the orchestrator never runs
    panel code inside its own handlers.
    """

    def __init__(self):
        self._orchestrator: Optional[Handler] = None
        self._panel: Optional[Handler] = None
        self._deliveries: Set[asyncio.Task] = set()
        self.logger = get_logger(__name__)

    def bind_orchestrator(self, handler: Optional[Handler]) -> None:
        self._orchestrator = handler

    def attach_panel(self, handler: Handler) -> None:
        self._panel = handler
        self.logger.debug("Panel attached")

    def detach_panel(self) -> None:
        self._panel = None
        self.logger.debug("Panel detached")

    @property
    def panel_attached(self) -> bool:
        return self._panel is not None

    async def send_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deliver a command and wait for the orchestrator's reply.

        Raises:
            MessageDeliveryError: If no orchestrator is bound or the message
                cannot be transported
        """
        if self._orchestrator is None:
            raise MessageDeliveryError("No orchestrator bound", {"type": message.get("type")})

        response = await self._orchestrator(_transport(message))
        return _transport(response) if response is not None else {}

    async def publish_event(self, message: Dict[str, Any]) -> None:
        """
        Queue an event for the attached panel.

        Raises:
            MessageDeliveryError: If no panel is attached
        """
        handler = self._panel
        if handler is None:
            raise MessageDeliveryError("No panel attached", {"type": message.get("type")})

        payload = _transport(message)
        task = asyncio.get_running_loop().create_task(handler(payload))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            handle_error(error, self.logger, {"channel": "event"}, reraise=False)

    async def drain(self) -> None:
        """Wait for every event queued so far to be handled."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
