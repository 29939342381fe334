"""Chrome extension bridge: outbound event stream and toggle confirmation.

The extension long-polls for events and reports the mute state it observes in
the call UI. A bridge-routed toggle waits for that report, correlated by id,
or gives up after a fixed window.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from micdrop.config import DEFAULT_BRIDGE_TIMEOUT_S, BridgePolicy

logger = logging.getLogger(__name__)

EVENT_HISTORY = 32


class BridgeEvent(str, Enum):
    TOGGLE_MIC = "toggle-mic"
    MUTE_MIC = "mute-mic"
    UNMUTE_MIC = "unmute-mic"
    TOGGLE_SPEAKER = "toggle-speaker"
    VOLUME_UP = "volume-up"
    VOLUME_DOWN = "volume-down"
    KEEP_ALIVE = "keep-alive"

    @classmethod
    def for_target(cls, muted: bool) -> "BridgeEvent":
        return cls.MUTE_MIC if muted else cls.UNMUTE_MIC


class Outcome(str, Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"
    BUSY = "busy"


class CorrelatorState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting-confirmation"


class ConfirmResult(str, Enum):
    RESOLVED = "resolved"  # settled the outstanding request
    UPDATED = "updated"  # spontaneous report, nothing pending
    DISCARDED = "discarded"  # stale or unknown correlation id


@dataclass
class BroadcastEvent:
    seq: int
    event: BridgeEvent
    correlation_id: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event.value, "id": self.correlation_id, "seq": self.seq}


class EventBroadcaster:
    """Sequence-numbered event stream for long-polling clients.

    Pollers pass the last sequence number they saw, so an event fired between
    two polls is still delivered.
    """

    def __init__(self, history: int = EVENT_HISTORY) -> None:
        self._cond = threading.Condition()
        self._events: deque[BroadcastEvent] = deque(maxlen=history)
        self._seq = 0
        self._closed = False

    @property
    def last_seq(self) -> int:
        with self._cond:
            return self._seq

    def broadcast(self, event: BridgeEvent, correlation_id: str | None = None) -> BroadcastEvent:
        with self._cond:
            self._seq += 1
            item = BroadcastEvent(seq=self._seq, event=event, correlation_id=correlation_id)
            self._events.append(item)
            self._cond.notify_all()
        logger.info("Bridge event: %s (seq=%d)", event.value, item.seq)
        return item

    def wait_for_event(self, since: int | None = None, timeout: float | None = None) -> BroadcastEvent | None:
        """Return the first event after ``since`` (default: now), or None on timeout/close."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            if since is None or since > self._seq:
                since = self._seq
            while not self._closed:
                for item in self._events:
                    if item.seq > since:
                        return item
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
        return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False


@dataclass
class PendingBridgeRequest:
    id: str
    created_at: float
    resolved: bool = False
    result: bool | None = None
    outcome: Outcome | None = None
    delivered: bool = False  # one of its events has been handed to a poller
    done: threading.Event = field(default_factory=threading.Event, repr=False)


@dataclass
class BridgeResult:
    status: Outcome
    muted: bool | None = None
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.muted is not None:
            data["muted"] = self.muted
        if self.correlation_id is not None:
            data["id"] = self.correlation_id
        return data


class BridgeCorrelator:
    """Single-slot request/confirmation correlation for bridge-routed toggles.

    The slot holds at most one PendingBridgeRequest. Confirmation, timeout and
    supersession race to settle it; settlement happens under ``_lock`` and only
    the first writer wins. Each waiting caller blocks on its own request's
    event, never on the lock.
    """

    def __init__(
        self,
        events: EventBroadcaster,
        timeout_s: float = DEFAULT_BRIDGE_TIMEOUT_S,
        policy: BridgePolicy = BridgePolicy.SUPERSEDE,
        on_report: Callable[[bool], None] | None = None,
    ) -> None:
        self._events = events
        self.timeout_s = timeout_s
        self.policy = policy
        self._on_report = on_report
        self._lock = threading.Lock()
        self._pending: PendingBridgeRequest | None = None
        self._reported_muted: bool | None = None

    @property
    def events(self) -> EventBroadcaster:
        return self._events

    @property
    def state(self) -> CorrelatorState:
        with self._lock:
            return CorrelatorState.IDLE if self._pending is None else CorrelatorState.AWAITING_CONFIRMATION

    @property
    def pending(self) -> PendingBridgeRequest | None:
        with self._lock:
            return self._pending

    @property
    def muted(self) -> bool:
        """Last mute state reported by the extension (or optimistically assumed)."""
        with self._lock:
            return bool(self._reported_muted)

    def _settle(self, request: PendingBridgeRequest, outcome: Outcome, result: bool | None = None) -> bool:
        # Caller holds _lock.
        if request.resolved:
            return False
        request.resolved = True
        request.outcome = outcome
        request.result = result
        if self._pending is request:
            self._pending = None
        request.done.set()
        return True

    def request_toggle(self, timeout: float | None = None) -> BridgeResult:
        """Ask the extension to toggle and wait for its confirmation."""
        timeout = self.timeout_s if timeout is None else timeout
        with self._lock:
            current = self._pending
            if current is not None:
                if self.policy == BridgePolicy.REJECT:
                    logger.info("Bridge busy with %s, rejecting new toggle", current.id)
                    return BridgeResult(Outcome.BUSY, correlation_id=current.id)
                self._settle(current, Outcome.SUPERSEDED)
                logger.info("Bridge request %s superseded", current.id)
            request = PendingBridgeRequest(id=uuid.uuid4().hex, created_at=time.time())
            self._pending = request
            target = not bool(self._reported_muted)

        self._broadcast_toggle(target, request.id)

        finished = request.done.wait(timeout)
        with self._lock:
            if not finished:
                self._settle(request, Outcome.TIMEOUT)
            outcome = request.outcome
            result = request.result

        if outcome == Outcome.TIMEOUT:
            logger.warning("No bridge confirmation for %s within %.1fs", request.id, timeout)
        return BridgeResult(
            outcome or Outcome.TIMEOUT,
            muted=result if outcome == Outcome.OK else None,
            correlation_id=request.id,
        )

    def fast_toggle(self) -> bool:
        """Broadcast a toggle without waiting; returns the optimistic new state."""
        with self._lock:
            muted = not bool(self._reported_muted)
            self._reported_muted = muted
        self._broadcast_toggle(muted)
        self._notify(muted)
        return muted

    def _broadcast_toggle(self, target: bool, correlation_id: str | None = None) -> None:
        # Explicit event first, then the generic toggle for clients that only
        # know toggle-mic. A client acts on one event of the pair.
        self._events.broadcast(BridgeEvent.for_target(target), correlation_id=correlation_id)
        self._events.broadcast(BridgeEvent.TOGGLE_MIC, correlation_id=correlation_id)

    def mark_delivered(self, event: BroadcastEvent) -> None:
        """Note that ``event`` was handed to a poller."""
        if event.correlation_id is None:
            return
        with self._lock:
            request = self._pending
            if request is not None and request.id == event.correlation_id:
                request.delivered = True

    def confirm(self, muted: bool, correlation_id: str | None = None) -> ConfirmResult:
        """Record a state report from the extension.

        A report carrying an id that is not the outstanding request's is
        discarded outright. A report without an id settles the outstanding
        request only once that request's event has reached a poller;
        before that it can only be a late or spontaneous report, so it just
        updates the last reported state.
        """
        with self._lock:
            request = self._pending
            if correlation_id is not None and (request is None or request.id != correlation_id):
                logger.info("Discarding bridge confirmation for stale id %s", correlation_id)
                return ConfirmResult.DISCARDED
            self._reported_muted = muted
            if request is not None and correlation_id is None and not request.delivered:
                logger.debug("Report without id before %s was delivered, not attributing it", request.id)
                request = None
            resolved = request is not None and self._settle(request, Outcome.OK, muted)
        logger.info("Bridge state reported: %s", "muted" if muted else "unmuted")
        self._notify(muted)
        return ConfirmResult.RESOLVED if resolved else ConfirmResult.UPDATED

    def notify_volume(self, event: BridgeEvent) -> None:
        """Forward a speaker/volume action to the extension; nothing is awaited."""
        self._events.broadcast(event)

    def _notify(self, muted: bool) -> None:
        if self._on_report is None:
            return
        try:
            self._on_report(muted)
        except Exception:
            logger.exception("Bridge report listener failed")
