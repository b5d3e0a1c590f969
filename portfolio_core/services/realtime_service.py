# =============================================================================
# portfolio_core/services/realtime_service.py
# In-Process Publish/Subscribe with Collaboration Rooms
# =============================================================================
"""
RealtimeHub - channel based event fan-out inside the application.

Features:
- subscribe(channel, callback) / unsubscribe(subscription_id)
- Room membership for collaborative editing sessions
- Room-scoped events reach only that room's subscribers
- "*" subscribers see every channel
- Sync and async callbacks; callback errors are logged, never raised
- Short per-channel history for late subscribers

The fallback router publishes a change event on the collection's channel
for every write, so open views can refresh.
"""

from __future__ import annotations
import inspect
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from portfolio_core.errors import ValidationError
from portfolio_core.services.base_service import BaseService

WILDCARD = "*"


@dataclass
class RealtimeEvent:
    channel: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    room: Optional[str] = None
    published_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "event": self.event,
            "payload": self.payload,
            "room": self.room,
            "published_at": self.published_at.isoformat(),
        }


EventCallback = Callable[[RealtimeEvent], Any]


@dataclass
class Subscription:
    id: str
    channel: str
    callback: EventCallback
    room: Optional[str] = None

    def accepts(self, event: RealtimeEvent) -> bool:
        if self.channel not in (event.channel, WILDCARD):
            return False
        # Room-scoped subscribers only hear their own room
        return self.room is None or self.room == event.room


class RealtimeHub(BaseService):
    """
    In-process realtime events.

    Usage:
        hub = RealtimeHub()
        sub_id = hub.subscribe("skills", lambda e: print(e.event, e.payload))
        await hub.publish("skills", "create", {"record": {...}})
        hub.unsubscribe(sub_id)
    """

    name = "realtime"

    def __init__(self, history_size: int = 50):
        super().__init__()
        self.history_size = history_size
        self._subscriptions: Dict[str, Subscription] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._history: Dict[str, Deque[RealtimeEvent]] = {}
        self._published = 0
        self._delivered = 0
        self._callback_errors = 0

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, channel: str, callback: EventCallback, room: Optional[str] = None) -> str:
        """
        Register a callback for a channel.

        Returns:
            Subscription id for unsubscribe()
        """
        if not channel:
            raise ValidationError("Channel name is required", field="channel")
        if not callable(callback):
            raise ValidationError("Callback must be callable", field="callback")

        subscription = Subscription(str(uuid.uuid4()), channel, callback, room)
        self._subscriptions[subscription.id] = subscription
        self.logger.debug(f"Subscribed {subscription.id} to '{channel}'")
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Unknown ids are ignored."""
        return self._subscriptions.pop(subscription_id, None) is not None

    def subscriptions(self, channel: Optional[str] = None) -> List[Subscription]:
        return [s for s in self._subscriptions.values() if channel is None or s.channel == channel]

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    async def publish(
        self,
        channel: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        room: Optional[str] = None,
    ) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of callbacks that completed without error
        """
        if not channel:
            raise ValidationError("Channel name is required", field="channel")

        message = RealtimeEvent(channel=channel, event=event, payload=dict(payload or {}), room=room)
        self._published += 1
        history = self._history.setdefault(channel, deque(maxlen=self.history_size))
        history.append(message)

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.id not in self._subscriptions or not subscription.accepts(message):
                continue
            try:
                result = subscription.callback(message)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self._callback_errors += 1
                self.logger.error(f"Realtime callback {subscription.id} failed on '{channel}': {e}", exc_info=True)

        self._delivered += delivered
        return delivered

    def recent_events(self, channel: str, limit: Optional[int] = None) -> List[RealtimeEvent]:
        """Latest events of a channel, oldest first."""
        events = list(self._history.get(channel, ()))
        return events[-limit:] if limit else events

    # =========================================================================
    # ROOMS
    # =========================================================================

    def join_room(self, room: str, member: str) -> List[str]:
        """Add a member to a room; returns the current members."""
        if not room or not member:
            raise ValidationError("Room and member are required", field="room")
        members = self._rooms.setdefault(room, set())
        members.add(member)
        self.logger.info(f"{member} joined room '{room}' ({len(members)} member(s))")
        return sorted(members)

    def leave_room(self, room: str, member: str) -> bool:
        """Remove a member; empty rooms are dropped. Returns True if the member was present."""
        members = self._rooms.get(room)
        if not members or member not in members:
            return False
        members.discard(member)
        if not members:
            del self._rooms[room]
        self.logger.info(f"{member} left room '{room}'")
        return True

    def room_members(self, room: str) -> List[str]:
        return sorted(self._rooms.get(room, ()))

    def rooms(self) -> List[str]:
        return sorted(self._rooms)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def reset(self) -> None:
        self._subscriptions.clear()
        self._rooms.clear()
        self._history.clear()

    def metrics(self) -> Dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "rooms": len(self._rooms),
            "published": self._published,
            "delivered": self._delivered,
            "callback_errors": self._callback_errors,
        }
