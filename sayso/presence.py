# sayso/presence.py

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, handle: str, event: str, payload: Dict[str, Any]) -> None: ...


class PresenceDirectory:
    """
    Maps each online user ID to the handle of its live realtime connection.

    All methods run on the event loop thread, so the mapping is mutated
    without a lock. Delivery is best-effort: if the user has no entry the
    event is dropped, and send failures are only logged.
    """

    NOTIFICATION_EVENT = "notification"

    def __init__(self, transport: Transport):
        self._transport = transport
        self._connections: Dict[str, str] = {}
        self._pending: Set[asyncio.Task] = set()
        logger.info("PresenceDirectory initialized.")

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, user_id: str, handle: str) -> None:
        """Registers `handle` as the live connection of `user_id` (last one wins)."""
        previous = self._connections.get(user_id)
        if previous == handle:
            return

        # A handle belongs to at most one user.
        owner = self._owner_of(handle)
        if owner is not None:
            del self._connections[owner]
            logger.info(f"Connection {handle} moved from user '{owner}' to '{user_id}'.")

        if previous is not None:
            logger.info(f"User '{user_id}' re-registered; superseding connection {previous}.")
        self._connections[user_id] = handle
        logger.info(f"User '{user_id}' registered on connection {handle}.")

    def lookup(self, user_id: str) -> Optional[str]:
        return self._connections.get(user_id)

    def remove_by_connection(self, handle: str) -> None:
        """Removes the entry pointing at `handle`, if any."""
        owner = self._owner_of(handle)
        if owner is None:
            return
        del self._connections[owner]
        logger.info(f"User '{owner}' unregistered (connection {handle} closed).")

    def online_user_ids(self) -> List[str]:
        return list(self._connections)

    def notify(self, user_id: str, payload: Dict[str, Any]) -> None:
        """
        Schedules delivery of `payload` to the user's live connection.

        Returns immediately; the caller never waits for, or hears about,
        the outcome of the delivery.
        """
        handle = self._connections.get(user_id)
        if handle is None:
            logger.debug(f"User '{user_id}' is offline. Dropping notification.")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; notification for '{user_id}' dropped.")
            return

        task = loop.create_task(self._deliver(user_id, handle, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Waits until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def clear(self) -> None:
        self._connections.clear()
        logger.info("PresenceDirectory cleared.")

    def _owner_of(self, handle: str) -> Optional[str]:
        for user_id, registered in self._connections.items():
            if registered == handle:
                return user_id
        return None

    async def _deliver(self, user_id: str, handle: str, payload: Dict[str, Any]) -> None:
        try:
            await self._transport.send(handle, self.NOTIFICATION_EVENT, payload)
            logger.debug(f"Notification delivered to '{user_id}' on {handle}.")
        except Exception as e:
            logger.warning(f"Delivery to '{user_id}' on {handle} failed: {e}")
