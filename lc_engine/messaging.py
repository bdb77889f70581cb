"""
Messaging Layer
================
The chat collaborator the workflow talks to: invite notifications,
per-LC negotiation channels, system notices, and the ordered message
log the archive service snapshots.

The engines only depend on the MessagingLayer protocol. Two
implementations ship here:

  InMemoryMessageLog  process-local rooms, used by tests
  JsonMessageLog      the same, persisted to one JSON file (CLI)

Events mirror the shape of Matrix room events: an event id, an event
type (``m.room.message``), a sender, a millisecond timestamp, a
``msgtype`` and a body.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from lc_engine.errors import NotFoundError
from lc_engine.timeutils import Clock, to_millis, utc_now


SYSTEM_SENDER = "@lc-engine:system"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class ChatEvent:
    """One event in a negotiation channel."""
    event_id: str
    room_id: str
    sender: str
    timestamp: int
    body: str
    event_type: str = "m.room.message"
    msgtype: str = "m.text"
    sender_name: str | None = None
    encrypted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "room_id": self.room_id,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "body": self.body,
            "event_type": self.event_type,
            "msgtype": self.msgtype,
            "sender_name": self.sender_name,
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatEvent":
        return cls(**data)


@dataclass
class Room:
    room_id: str
    name: str
    members: list[str] = field(default_factory=list)
    events: list[ChatEvent] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class MessagingLayer(Protocol):
    def send_invite_notification(self, invitation: Any) -> None: ...

    def create_negotiation_channel(self, participants: list[str], name: str = "") -> str: ...

    def fetch_messages(self, channel_id: str, start: int, end: int) -> list[ChatEvent]: ...

    def post_system_notice(self, channel_id: str, text: str) -> None: ...

    def room_name(self, channel_id: str) -> str: ...

    def room_members(self, channel_id: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryMessageLog:
    """Rooms and events held in process memory."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()
        self.notifications: list[dict[str, Any]] = []

    # --- MessagingLayer ---

    def send_invite_notification(self, invitation: Any) -> None:
        with self._lock:
            self.notifications.append({
                "invitation_id": invitation.invitation_id,
                "to": invitation.invitee.matrix_id,
                "from": invitation.initiator.matrix_id,
                "lc_title": invitation.lc_title,
                "timestamp": to_millis(self._clock()),
            })
            self._persist()

    def create_negotiation_channel(self, participants: list[str], name: str = "") -> str:
        room_id = f"!lc-{uuid.uuid4().hex[:12]}:lc-engine"
        with self._lock:
            self._rooms[room_id] = Room(
                room_id=room_id,
                name=name or "LC Negotiation",
                members=sorted(set(participants)),
            )
            self._persist()
        return room_id

    def fetch_messages(self, channel_id: str, start: int, end: int) -> list[ChatEvent]:
        with self._lock:
            room = self._room(channel_id)
            events = [e for e in room.events if start <= e.timestamp <= end]
        return sorted(events, key=lambda e: (e.timestamp, e.event_id))

    def post_system_notice(self, channel_id: str, text: str) -> None:
        self.post_message(channel_id, SYSTEM_SENDER, text, msgtype="m.notice",
                          sender_name="LC Engine")

    def room_name(self, channel_id: str) -> str:
        with self._lock:
            return self._room(channel_id).name

    def room_members(self, channel_id: str) -> list[str]:
        with self._lock:
            return list(self._room(channel_id).members)

    # --- Chat side (what participants do) ---

    def post_message(
        self,
        channel_id: str,
        sender: str,
        body: str,
        *,
        timestamp: int | None = None,
        msgtype: str = "m.text",
        event_type: str = "m.room.message",
        sender_name: str | None = None,
        encrypted: bool = False,
    ) -> ChatEvent:
        with self._lock:
            room = self._room(channel_id)
            event = ChatEvent(
                event_id=f"${uuid.uuid4().hex}",
                room_id=channel_id,
                sender=sender,
                timestamp=timestamp if timestamp is not None else to_millis(self._clock()),
                body=body,
                event_type=event_type,
                msgtype=msgtype,
                sender_name=sender_name,
                encrypted=encrypted,
            )
            room.events.append(event)
            if sender not in room.members and sender != SYSTEM_SENDER:
                room.members.append(sender)
            self._persist()
            return event

    def _room(self, channel_id: str) -> Room:
        room = self._rooms.get(channel_id)
        if room is None:
            raise NotFoundError(f"Room not found: {channel_id}",
                                details={"room_id": channel_id})
        return room

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


# ---------------------------------------------------------------------------
# JSON-file implementation
# ---------------------------------------------------------------------------

class JsonMessageLog(InMemoryMessageLog):
    """InMemoryMessageLog that survives between CLI invocations."""

    def __init__(self, path: Path, clock: Clock | None = None) -> None:
        super().__init__(clock)
        self._path = path
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            for room_id, room in data.get("rooms", {}).items():
                self._rooms[room_id] = Room(
                    room_id=room_id,
                    name=room["name"],
                    members=room.get("members", []),
                    events=[ChatEvent.from_dict(e) for e in room.get("events", [])],
                )
            self.notifications = data.get("notifications", [])

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "rooms": {
                room_id: {
                    "name": room.name,
                    "members": room.members,
                    "events": [e.to_dict() for e in room.events],
                }
                for room_id, room in self._rooms.items()
            },
            "notifications": self.notifications,
        }
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
