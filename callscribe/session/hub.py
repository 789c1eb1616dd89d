"""SubscriptionHub — fans session events out to subscriber connections.

Each subscription carries its own ``send`` coroutine function (for a
FastAPI socket, ``websocket.send_json``).  A subscriber whose send raises
or stalls past ``send_timeout`` is logged and dropped; the others still get
the event.  The hub itself does not order events: ``SessionManager`` calls
``broadcast`` serially per session, and each broadcast completes before the
next one starts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

from callscribe import constants
from callscribe.errors import SubscriberDeliveryError
from callscribe.models import SessionEvent

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    session_id: str
    connection_handle: Hashable
    send: SendFn


class SubscriptionHub:
    def __init__(self, *, send_timeout: float = constants.SUBSCRIBER_SEND_TIMEOUT) -> None:
        self._send_timeout = send_timeout
        self._subscriptions: dict[str, dict[Hashable, Subscription]] = {}
        self._dropped: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        session_id: str,
        connection_handle: Hashable,
        send: SendFn,
        snapshot: dict[str, Any] | None = None,
    ) -> bool:
        """Register a subscriber, sending *snapshot* first when given.

        Returns False (and registers nothing) if the snapshot cannot be
        delivered.
        """
        sub = Subscription(session_id, connection_handle, send)
        if snapshot is not None:
            message = {"type": "snapshot", "call_id": session_id, "payload": snapshot}
            try:
                await self._deliver(sub, message)
            except SubscriberDeliveryError as exc:
                self._dropped += 1
                logger.warning("[Hub] Snapshot to %r for %s failed: %s", connection_handle, session_id, exc)
                return False

        self._subscriptions.setdefault(session_id, {})[connection_handle] = sub
        logger.info(
            "[Hub] %r subscribed to %s (%d subscriber(s)).",
            connection_handle, session_id, self.subscriber_count(session_id),
        )
        return True

    def unsubscribe(self, session_id: str, connection_handle: Hashable) -> bool:
        """Remove a subscription.  Unknown handles are ignored."""
        subs = self._subscriptions.get(session_id)
        if not subs or connection_handle not in subs:
            return False
        del subs[connection_handle]
        if not subs:
            del self._subscriptions[session_id]
        logger.debug("[Hub] %r unsubscribed from %s.", connection_handle, session_id)
        return True

    async def broadcast(self, session_id: str, event: SessionEvent) -> int:
        """Deliver *event* to every live subscriber of *session_id*.

        Returns the number of successful deliveries.
        """
        subs = list(self._subscriptions.get(session_id, {}).values())
        if not subs:
            return 0

        message = event.to_dict()
        outcomes = await asyncio.gather(
            *(self._deliver(sub, message) for sub in subs),
            return_exceptions=True,
        )

        delivered = 0
        for sub, outcome in zip(subs, outcomes):
            if isinstance(outcome, BaseException):
                self._drop(sub, outcome)
            else:
                delivered += 1
        return delivered

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, {}))

    def close_session(self, session_id: str) -> int:
        """Forget every subscription for *session_id*; returns how many were removed."""
        subs = self._subscriptions.pop(session_id, {})
        return len(subs)

    @property
    def dropped_count(self) -> int:
        """Subscribers removed because a delivery failed."""
        return self._dropped

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _deliver(self, sub: Subscription, message: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(sub.send(message), timeout=self._send_timeout)
        except asyncio.TimeoutError as exc:
            raise SubscriberDeliveryError(
                f"send timed out after {self._send_timeout}s", call_id=sub.session_id
            ) from exc
        except Exception as exc:
            raise SubscriberDeliveryError(str(exc) or type(exc).__name__, call_id=sub.session_id) from exc

    def _drop(self, sub: Subscription, exc: BaseException) -> None:
        self._dropped += 1
        logger.warning(
            "[Hub] Dropping %r from %s after failed delivery: %s",
            sub.connection_handle, sub.session_id, exc,
        )
        self.unsubscribe(sub.session_id, sub.connection_handle)
