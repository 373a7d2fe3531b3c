"""
Real-time approval event publisher
In-process subscriber registry backing the Server-Sent Events stream
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Tuple

logger = logging.getLogger(__name__)


class RealtimePublisher:
    """Best-effort fan-out to currently connected subscribers

    Events for users with no open connection are dropped; nothing is retried.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[Tuple[str, asyncio.Queue]]] = {}

    def subscribe(self, company_id: str, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(user_id, []).append((company_id, queue))
        logger.info(f"Real-time subscriber connected: user {user_id}")
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        connections = self._subscribers.get(user_id, [])
        remaining = [entry for entry in connections if entry[1] is not queue]
        if remaining:
            self._subscribers[user_id] = remaining
        else:
            self._subscribers.pop(user_id, None)
        logger.info(f"Real-time subscriber disconnected: user {user_id}")

    def is_connected(self, user_id: str) -> bool:
        return bool(self._subscribers.get(user_id))

    def connection_count(self) -> int:
        return sum(len(connections) for connections in self._subscribers.values())

    def publish(
        self, company_id: str, recipient_ids: Iterable[str], payload: Dict[str, Any]
    ) -> int:
        """Queue the payload for each connected recipient; returns deliveries"""
        delivered = 0
        message = dict(payload)
        message.setdefault("timestamp", datetime.utcnow().isoformat())

        for user_id in set(recipient_ids):
            for subscriber_company, queue in self._subscribers.get(user_id, []):
                if subscriber_company != company_id:
                    continue
                try:
                    queue.put_nowait(message)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(f"Real-time queue full for user {user_id}; event dropped")
        return delivered

    async def stream(
        self, company_id: str, user_id: str, heartbeat_seconds: float = 30.0
    ) -> AsyncIterator[str]:
        """SSE frames for one connection until the client goes away"""
        queue = self.subscribe(company_id, user_id)
        try:
            yield f"data: {json.dumps({'type': 'connected', 'user_id': user_id})}\n\n"
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield f"data: {json.dumps(message, default=str)}\n\n"
        finally:
            self.unsubscribe(user_id, queue)


# Global publisher instance
realtime_publisher = RealtimePublisher()
