"""
Dispatcher-owned call ledger.

The handler map and the active-call counter are the only shared mutable
state in the dispatcher. Both are private to `CallLedger` and change only
through its transitions:

    register      dispatch: a handler is created and a slot is taken
    mark_answered answer: guarded flag set, unanswered timer revoked once
    expire        timeout: an unanswered handler is dropped, slot freed
    release       completion or origination failure: slot freed

None of the transitions await, so each one is atomic on the event loop.
"""

from typing import Dict, List, Optional

from prometheus_client import Gauge

from ..logging_config import get_logger
from .models import CallHandler, Contact
from .timers import ScheduledTask

logger = get_logger(__name__)

_ACTIVE_CALLS = Gauge(
    "voicebot_active_calls",
    "Calls currently occupying a concurrency slot",
)


class SlotUnavailable(Exception):
    """Raised when a handler cannot be registered."""


class CallLedger:
    def __init__(self, max_concurrent: int):
        self.max_concurrent = max_concurrent
        self._handlers: Dict[str, CallHandler] = {}
        self._active = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def active_calls(self) -> int:
        return self._active

    @property
    def has_capacity(self) -> bool:
        return self._active < self.max_concurrent

    def get(self, phone_number: str) -> Optional[CallHandler]:
        return self._handlers.get(phone_number)

    def find_by_channel(self, channel_id: str) -> Optional[CallHandler]:
        for handler in self._handlers.values():
            if handler.channel_id == channel_id:
                return handler
        return None

    def handlers(self) -> List[CallHandler]:
        return list(self._handlers.values())

    def snapshot(self) -> Dict[str, object]:
        return {
            "active_calls": self._active,
            "max_concurrent": self.max_concurrent,
            "handlers": [
                {
                    "phone_number": h.phone_number,
                    "campaign_id": h.campaign_id,
                    "channel_id": h.channel_id,
                    "answered": h.answered,
                    "timeout": h.timeout.state.value if h.timeout else None,
                }
                for h in self._handlers.values()
            ],
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def register(self, contact: Contact, campaign_id: str, channel_id: Optional[str] = None) -> CallHandler:
        phone = contact.phone_number
        if phone in self._handlers:
            raise SlotUnavailable(f"call already in flight for {phone}")
        if not self.has_capacity:
            raise SlotUnavailable("concurrency cap reached")
        handler = CallHandler(phone_number=phone, contact=contact, campaign_id=campaign_id, channel_id=channel_id)
        self._handlers[phone] = handler
        self._active += 1
        _ACTIVE_CALLS.set(self._active)
        return handler

    def bind_channel(self, phone_number: str, channel_id: str) -> Optional[CallHandler]:
        handler = self._handlers.get(phone_number)
        if handler is not None and channel_id:
            handler.channel_id = channel_id
        return handler

    def arm_timeout(self, phone_number: str, timer: ScheduledTask) -> bool:
        """Attach the unanswered timer; refused if the call was already answered or released."""
        handler = self._handlers.get(phone_number)
        if handler is None or handler.answered:
            timer.cancel()
            return False
        if handler.timeout is not None:
            handler.timeout.cancel()
        handler.timeout = timer
        return True

    def mark_answered(self, phone_number: str) -> Optional[CallHandler]:
        handler = self._handlers.get(phone_number)
        if handler is None:
            return None
        if handler.answered:
            logger.warning("Duplicate answer ignored", phone_number=phone_number)
            return None
        handler.answered = True
        if handler.timeout is not None:
            handler.timeout.cancel()
        return handler

    def expire(self, phone_number: str) -> Optional[CallHandler]:
        handler = self._handlers.get(phone_number)
        if handler is None or handler.answered:
            return None
        if handler.timeout is not None:
            handler.timeout.cancel()
        return self._remove(phone_number)

    def release(self, phone_number: str) -> Optional[CallHandler]:
        handler = self._handlers.get(phone_number)
        if handler is None:
            return None
        if not handler.answered and handler.timeout is not None:
            handler.timeout.cancel()
        return self._remove(phone_number)

    def clamp(self) -> None:
        if self._active < 0:
            logger.warning("Active call counter negative; clamping to zero", active_calls=self._active)
            self._active = 0
            _ACTIVE_CALLS.set(0)

    def reconcile(self) -> int:
        """Re-derive the counter from the handler set; returns the drift corrected."""
        derived = len(self._handlers)
        drift = self._active - derived
        if drift:
            logger.warning("Active call counter drift corrected", counted=self._active, handlers=derived)
        self._active = derived
        _ACTIVE_CALLS.set(derived)
        return drift

    def _remove(self, phone_number: str) -> CallHandler:
        handler = self._handlers.pop(phone_number)
        self._active -= 1
        self.clamp()
        _ACTIVE_CALLS.set(self._active)
        return handler
