"""
Reconnection supervisor.

When a Ready session loses its link, the supervisor schedules reconnection
through the connection manager with exponential backoff:

    delay = min(base_delay * 2**attempt, max_delay)

The attempt counter lives on the session and is reset by the manager on
every transition to Ready. Once ``max_attempts`` reconnections have failed
the session is left Failed until something external reconnects it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from ilinkbridge.exceptions import ConnectionFailedError
from ilinkbridge.protocol.constants import ProtocolConstants
from ilinkbridge.session import DeviceSession, SessionState

if TYPE_CHECKING:
    from ilinkbridge.manager import ConnectionManager, SessionRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ReconnectPolicy(BaseModel):
    """Backoff parameters for automatic reconnection."""

    model_config = ConfigDict(frozen=True)

    base_delay: float = Field(default=ProtocolConstants.DEFAULT_RECONNECT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=ProtocolConstants.DEFAULT_RECONNECT_MAX_DELAY, ge=0)
    max_attempts: int = Field(default=ProtocolConstants.DEFAULT_RECONNECT_MAX_ATTEMPTS, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before reconnection ``attempt`` (0-based)."""
        return min(self.base_delay * 2**attempt, self.max_delay)


class ReconnectionSupervisor:
    """
    Reconnects sessions after link loss.

    At most one reconnection task runs per device. The supervisor never
    touches the radio directly; every attempt goes through
    ``ConnectionManager.connect_device`` and therefore through its
    exclusive lock.

    Args:
        manager: Connection manager used to re-establish links.
        registry: Session registry shared with the manager.
        policy: Backoff parameters.
        sleep: Awaitable used for backoff delays (injectable for tests).
    """

    def __init__(
        self,
        manager: ConnectionManager,
        registry: SessionRegistry,
        policy: ReconnectPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._manager = manager
        self._registry = registry
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    def is_reconnecting(self, device_id: str) -> bool:
        task = self._tasks.get(device_id)
        return task is not None and not task.done()

    def handle_link_lost(self, device_id: str) -> None:
        """Schedule reconnection for a session that just lost its link."""
        if self.is_reconnecting(device_id):
            logger.debug("Device %s: reconnection already scheduled", device_id)
            return

        session = self._registry.get(device_id)
        if session is None:
            logger.warning("Link loss reported for unknown device %s", device_id)
            return

        loop = asyncio.get_running_loop()
        self._tasks[device_id] = loop.create_task(
            self._reconnect(session), name=f"reconnect-{device_id}"
        )

    async def _reconnect(self, session: DeviceSession) -> None:
        device_id = session.device_id
        try:
            while True:
                attempt = session.reconnect_attempts
                if attempt >= self._policy.max_attempts:
                    logger.error(
                        "Device %s: giving up after %d reconnection attempt(s)",
                        device_id,
                        attempt,
                    )
                    session.transition(SessionState.FAILED)
                    return

                delay = self._policy.delay_for(attempt)
                session.reconnect_attempts = attempt + 1
                logger.info(
                    "Device %s: reconnecting in %.1fs (attempt %d/%d)",
                    device_id,
                    delay,
                    attempt + 1,
                    self._policy.max_attempts,
                )
                await self._sleep(delay)

                if session.is_connected():
                    return

                try:
                    await self._manager.connect_device(device_id)
                except ConnectionFailedError as e:
                    logger.warning("Device %s: reconnection failed: %s", device_id, e)
                    continue

                # Dropped again before this task finished
                if session.state is SessionState.DISCONNECTED:
                    continue
                return
        finally:
            if self._tasks.get(device_id) is asyncio.current_task():
                del self._tasks[device_id]

    async def cancel(self, device_id: str) -> None:
        """Cancel the pending reconnection for one device, if any."""
        task = self._tasks.pop(device_id, None)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel every pending reconnection."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("Cancelled %d reconnection task(s)", len(tasks))
