"""
COVERPOOL Event Log

Append-only, hash-chained record of policy lifecycle transitions for
external observers, plus an in-process bus for subscribers.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                             EVENT LOG                                    │
    │                                                                          │
    │  Domain Events          Event Log               Event Bus                │
    │  ├─ PolicyCreated       ├─ Append-only          ├─ Typed subscriptions   │
    │  ├─ PolicyActivated     ├─ Hash chain           ├─ Priorities            │
    │  ├─ PolicyReimbursed    ├─ Savepoint/rollback   ├─ Filters               │
    │  ├─ PremiumRefunded     └─ Query / export       └─ Error callback        │
    │  └─ PoolFunded                                                           │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Immutable Events: Events are immutable facts about what happened.
    They cannot be changed, only new events can be appended.

    All-or-nothing: Events appended inside a failed ledger operation are
    discarded with the rest of the operation. Subscribers only ever see
    events from committed operations.

    Tamper Evidence: Each record digest covers the previous record digest,
    so any edit to history breaks verify_chain().

Usage
─────

    log = EventLog()

    @log.bus.subscribe(PolicyReimbursed)
    def on_payout(event):
        print(f"{event.holder} paid {event.amount}")

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Set,
    Type,
)

from coverpool.hardening import AtomicCounter
from coverpool.observability import PoolLayer, get_logger

logger = get_logger("events", PoolLayer.EVENTS)

GENESIS_DIGEST = "0" * 64


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize to canonical JSON bytes: sorted keys, no whitespace, UTF-8."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Event:
    """
    Base class for all ledger events.

    Each event has a unique ID and a wall-clock timestamp. Ledger time
    (used for expiry) lives in the event payload where relevant.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        data = dict(data)
        event_type = data.pop("event_type", cls.__name__)
        target = EVENT_TYPES.get(event_type, cls) if cls is Event else cls
        return target(**data)

    def to_json(self) -> str:
        """Serialize event to JSON for display/transport (not for digest computation)."""
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        return hashlib.sha256(canonical_json_bytes(self.to_dict())).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PolicyCreated(Event):
    """Emitted when the Issuer appends a new, inactive policy."""
    holder: str = ""
    policy_id: int = 0
    deposit_amount: int = 0
    secured_amount: int = 0
    expiration_time: int = 0
    activated: bool = False
    valid: bool = True
    doc_ref: str = ""


@dataclass(frozen=True)
class PolicyActivated(Event):
    """Emitted when a holder funds and activates a policy. Carries the updated record."""
    holder: str = ""
    policy_id: int = 0
    deposit_amount: int = 0
    secured_amount: int = 0
    expiration_time: int = 0
    activated: bool = True
    valid: bool = True
    doc_ref: str = ""


@dataclass(frozen=True)
class PolicyReimbursed(Event):
    """Emitted when the ClaimsAuthority pays out a policy."""
    holder: str = ""
    policy_id: int = 0
    amount: int = 0


@dataclass(frozen=True)
class PremiumRefunded(Event):
    """Emitted when activation funds above the required deposit are returned."""
    holder: str = ""
    policy_id: int = 0
    amount: int = 0


@dataclass(frozen=True)
class PoolFunded(Event):
    """Emitted when funds enter custody outside activation."""
    funder: str = ""
    amount: int = 0


EVENT_TYPES: Dict[str, Type[Event]] = {
    cls.__name__: cls
    for cls in (PolicyCreated, PolicyActivated, PolicyReimbursed, PremiumRefunded, PoolFunded)
}


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        super().__init__(f"Handler {getattr(handler, '__name__', handler)!s} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Handlers run synchronously in priority order. A failing handler never
    affects the ledger: by the time events are published the operation has
    already committed.

    Example:
        bus = EventBus()

        @bus.subscribe(PolicyCreated, PolicyActivated)
        def handle(event):
            print(event.event_type)
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        Args:
            event_types: Event types to subscribe to (none = all events)
            priority: Handler priority (higher = earlier)
            filter_func: Optional filter function
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        # Call handlers outside the lock
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.error(str(error), error_code="handler_error", event_type=event.event_type)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EventRecord:
    """A logged event with its position and chain digests."""
    sequence_number: int
    event: Event
    previous_digest: str
    record_digest: str

    @staticmethod
    def compute_digest(sequence_number: int, event: Event, previous_digest: str) -> str:
        content = {
            "sequence_number": sequence_number,
            "event": event.to_dict(),
            "previous_digest": previous_digest,
        }
        return hashlib.sha256(canonical_json_bytes(content)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
            "previous_digest": self.previous_digest,
            "record_digest": self.record_digest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventRecord":
        return cls(
            sequence_number=int(data["sequence_number"]),
            event=Event.from_dict(data["event"]),
            previous_digest=str(data["previous_digest"]),
            record_digest=str(data["record_digest"]),
        )


class EventLog:
    """
    Append-only, hash-chained lifecycle log.

    Appends made inside :meth:`transaction` are provisional: if the block
    raises they are truncated away, and they reach bus subscribers only
    when the outermost transaction exits cleanly.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._records: List[EventRecord] = []
        self._lock = threading.RLock()
        self._sequence = AtomicCounter(0)
        self._depth = 0
        self._published_upto = 0
        self.bus = bus or EventBus()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def head_digest(self) -> str:
        with self._lock:
            return self._records[-1].record_digest if self._records else GENESIS_DIGEST

    def append(self, event: Event) -> EventRecord:
        with self._lock:
            previous = self.head_digest
            sequence = self._sequence.increment()
            record = EventRecord(
                sequence_number=sequence,
                event=event,
                previous_digest=previous,
                record_digest=EventRecord.compute_digest(sequence, event, previous),
            )
            self._records.append(record)
            logger.debug(
                f"Event {event.event_type} appended",
                operation="append",
                sequence_number=sequence,
            )
            pending = self._take_pending() if self._depth == 0 else []
        self._publish(pending)
        return record

    @contextmanager
    def transaction(self, publish: bool = True) -> Iterator["EventLog"]:
        """
        Make appends inside the block provisional.

        With ``publish=False`` committed records stay pending until
        :meth:`publish_pending` is called, letting an enclosing owner
        deliver them once its own commit can no longer be undone.
        """
        with self._lock:
            savepoint = len(self._records)
            self._depth += 1
        try:
            yield self
        except BaseException:
            with self._lock:
                self._depth -= 1
                del self._records[savepoint:]
                self._sequence.reset(self._records[-1].sequence_number if self._records else 0)
                self._published_upto = min(self._published_upto, len(self._records))
            raise
        else:
            with self._lock:
                self._depth -= 1
            if publish:
                self.publish_pending()

    def publish_pending(self) -> int:
        """Deliver committed, not yet published records to the bus. Returns how many."""
        with self._lock:
            pending = self._take_pending() if self._depth == 0 else []
        self._publish(pending)
        return len(pending)

    def _take_pending(self) -> List[EventRecord]:
        pending = self._records[self._published_upto:]
        self._published_upto = len(self._records)
        return pending

    def _publish(self, records: List[EventRecord]) -> None:
        for record in records:
            self.bus.publish(record.event)

    def records(
        self,
        event_type: Optional[Type[Event]] = None,
        holder: Optional[str] = None,
        since_sequence: int = 0,
    ) -> List[EventRecord]:
        """Query records, oldest first."""
        with self._lock:
            out = [r for r in self._records if r.sequence_number > since_sequence]
        if event_type is not None:
            out = [r for r in out if isinstance(r.event, event_type)]
        if holder is not None:
            out = [r for r in out if getattr(r.event, "holder", None) == holder]
        return out

    def events(self, event_type: Optional[Type[Event]] = None, holder: Optional[str] = None) -> List[Event]:
        return [r.event for r in self.records(event_type=event_type, holder=holder)]

    def verify_chain(self) -> tuple:
        """
        Verify record digests and links.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            previous = GENESIS_DIGEST
            for i, record in enumerate(self._records):
                if record.previous_digest != previous:
                    return (False, i)
                expected = EventRecord.compute_digest(record.sequence_number, record.event, previous)
                if expected != record.record_digest:
                    return (False, i)
                previous = record.record_digest
            return (True, None)

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._records]

    @classmethod
    def from_export(cls, data: List[Dict[str, Any]], bus: Optional[EventBus] = None) -> "EventLog":
        log = cls(bus=bus)
        log._records = [EventRecord.from_dict(r) for r in data]
        log._sequence.reset(log._records[-1].sequence_number if log._records else 0)
        log._published_upto = len(log._records)
        return log


__all__ = [
    "canonical_json_bytes",
    "Event",
    "PolicyCreated",
    "PolicyActivated",
    "PolicyReimbursed",
    "PremiumRefunded",
    "PoolFunded",
    "EVENT_TYPES",
    "EventHandler",
    "EventHandlerRegistration",
    "EventHandlerError",
    "EventBus",
    "EventRecord",
    "EventLog",
]
