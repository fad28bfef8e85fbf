"""
Pushes the latest status update to websocket subscribers.
"""

import asyncio
from typing import Optional, Set
from loguru import logger
from control_api.server.schemas import ServerStatusUpdate
from control_api.util import dumps


class Subscription:
    """
    One subscriber: a single-slot mailbox, a newer update replaces an unsent one.
    """

    def __init__(self):
        self._mailbox: asyncio.Queue = asyncio.Queue(maxsize=1)

    def offer(self, payload: str) -> None:
        try:
            self._mailbox.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self._mailbox.put_nowait(payload)

    async def next(self) -> str:
        return await self._mailbox.get()


class Broadcaster:
    def __init__(self):
        self._subscribers: Set[Subscription] = set()
        self.latest: Optional[ServerStatusUpdate] = None
        self._latest_payload: Optional[str] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """
        Register a subscriber, the latest snapshot is queued for it right away.
        """
        subscription = Subscription()
        if self._latest_payload is not None:
            subscription.offer(self._latest_payload)
        self._subscribers.add(subscription)
        logger.debug(f"Status subscriber added, {len(self._subscribers)} connected")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.debug(f"Status subscriber removed, {len(self._subscribers)} connected")

    def publish(self, update: ServerStatusUpdate) -> None:
        """
        Serialize once and hand the payload to every mailbox, never awaiting a socket.
        """
        payload = dumps(update)
        self.latest = update
        self._latest_payload = payload
        for subscription in list(self._subscribers):
            subscription.offer(payload)

    async def pump(self, subscription: Subscription, send, send_timeout: float) -> None:
        """
        Drain one subscriber's mailbox into its connection until a send fails or times out.
        """
        try:
            while True:
                payload = await subscription.next()
                await asyncio.wait_for(send(payload), timeout=send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Status subscriber too slow (>{send_timeout}s), dropping it")
        finally:
            self.unsubscribe(subscription)
