"""
Call dispatcher: campaign queues, the concurrency cap and unanswered timeouts.

Advancement is event driven. Each campaign has at most one pending
re-trigger; dispatching, failing, backing off and releasing a slot all go
through `_schedule`, which keeps the earliest requested time. Checking the
cap, claiming a contact and originating are serialized by one lock, so
concurrent dispatch attempts never overshoot `max_concurrent_calls`.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from prometheus_client import Counter

from ..ari_client import AnsweredCall, CallEnded, OriginationError
from ..audio.legs import BridgeLeg
from ..config import DispatcherConfig
from ..conversation.engine import CallSession, ConversationEngine
from ..logging_config import get_logger
from .models import Call, CallHandler, CallStatus, CampaignStatus, ContactStatus
from .slots import CallLedger, SlotUnavailable
from .store import CampaignStore
from .timers import ScheduledTask

logger = get_logger(__name__)

_CALL_OUTCOMES = Counter(
    "voicebot_call_outcomes_total",
    "Dispatched calls by outcome",
    ["outcome"],
)

# Hangup causes that mean the number itself is unusable rather than unanswered
_FAILED_CAUSES = ("congestion", "unallocated", "invalid", "failure", "bridge_setup_failed")


class DispatchResult(str, Enum):
    INACTIVE = "inactive"
    SATURATED = "saturated"
    DISPATCHED = "dispatched"
    DEFERRED = "deferred"
    EXHAUSTED = "exhausted"


class CallDispatcher:
    def __init__(self, config: DispatcherConfig, store: CampaignStore, telephony, conversation: ConversationEngine):
        self.config = config
        self.store = store
        self.telephony = telephony
        self.conversation = conversation
        self.ledger = CallLedger(config.max_concurrent_calls)
        self._lock = asyncio.Lock()
        self._running: Set[str] = set()
        self._retriggers: Dict[str, Tuple[ScheduledTask, float]] = {}

    # ------------------------------------------------------------------
    # Campaign lifecycle
    # ------------------------------------------------------------------
    async def start_campaign(self, campaign_id: str) -> bool:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            logger.warning("Cannot start unknown campaign", campaign_id=campaign_id)
            return False
        if campaign.status == CampaignStatus.COMPLETED:
            logger.warning("Campaign already completed", campaign_id=campaign_id)
            return False
        await self.store.update_campaign_status(campaign_id, CampaignStatus.RUNNING)
        self._running.add(campaign_id)
        logger.info("Campaign started", campaign_id=campaign_id, name=campaign.name, contacts=len(campaign.contact_ids))
        self._schedule(campaign_id, 0)
        return True

    async def pause_campaign(self, campaign_id: str) -> None:
        """Halt advancement; calls already in flight run to completion."""
        await self._halt(campaign_id, CampaignStatus.PAUSED)

    async def stop_campaign(self, campaign_id: str) -> None:
        await self._halt(campaign_id, CampaignStatus.COMPLETED)

    async def _halt(self, campaign_id: str, status: CampaignStatus) -> None:
        self._running.discard(campaign_id)
        self._cancel_retrigger(campaign_id)
        await self.store.update_campaign_status(campaign_id, status)
        logger.info("Campaign halted", campaign_id=campaign_id, status=status.value, active_calls=self.ledger.active_calls)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def dispatch_next(self, campaign_id: str) -> DispatchResult:
        """Originate at most one pending contact.

        Raises OriginationError when the telephony platform refuses the call;
        the contact is then failed and its slot already released.
        """
        async with self._lock:
            if campaign_id not in self._running:
                return DispatchResult.INACTIVE
            campaign = await self.store.get_campaign(campaign_id)
            if campaign is None or campaign.status != CampaignStatus.RUNNING:
                self._running.discard(campaign_id)
                return DispatchResult.INACTIVE

            self.ledger.clamp()
            if not self.ledger.has_capacity:
                logger.debug("Concurrency cap reached; backing off", campaign_id=campaign_id, active_calls=self.ledger.active_calls)
                self._schedule(campaign_id, self.config.saturated_backoff_sec)
                return DispatchResult.SATURATED

            contacts = await self.store.get_pending_contacts(campaign_id, limit=None)
            if not contacts:
                await self._complete(campaign_id)
                return DispatchResult.EXHAUSTED

            # A number already in flight stays pending until its call is released
            contact = next((c for c in contacts if self.ledger.get(c.phone_number) is None), None)
            if contact is None:
                logger.debug("Pending contacts wait on numbers in flight", campaign_id=campaign_id, pending=len(contacts))
                self._schedule(campaign_id, self.config.dispatch_interval_sec)
                return DispatchResult.DEFERRED

            phone = contact.phone_number
            try:
                self.ledger.register(contact, campaign_id)
            except SlotUnavailable as exc:
                logger.warning("Slot claim refused", campaign_id=campaign_id, phone_number=phone, error=str(exc))
                self._schedule(campaign_id, self.config.dispatch_interval_sec)
                return DispatchResult.DEFERRED
            try:
                await self.store.update_contact_status(contact.id, ContactStatus.CALLING)
                await self.store.increment_call_attempts(contact.id)
            except Exception:
                self.ledger.release(phone)
                raise

            try:
                channel_id = await self.telephony.originate_call(phone, contact.id)
            except Exception as exc:
                self.ledger.release(phone)
                _CALL_OUTCOMES.labels(outcome="origination_failed").inc()
                await self._set_contact_status(contact.id, ContactStatus.FAILED)
                logger.error("Origination failed", campaign_id=campaign_id, phone_number=phone, error=str(exc))
                if isinstance(exc, OriginationError):
                    raise
                raise OriginationError(f"originate {phone} failed: {exc}") from exc

            self.ledger.bind_channel(phone, channel_id)
            timer = ScheduledTask(
                self.config.unanswered_timeout_sec,
                lambda: self._on_unanswered_timeout(phone),
                name=f"unanswered-{phone}",
            )
            self.ledger.arm_timeout(phone, timer)
            _CALL_OUTCOMES.labels(outcome="dispatched").inc()
            logger.info(
                "Call dispatched",
                campaign_id=campaign_id,
                contact_id=contact.id,
                phone_number=phone,
                channel_id=channel_id,
                active_calls=self.ledger.active_calls,
            )
            return DispatchResult.DISPATCHED

    async def _complete(self, campaign_id: str) -> None:
        self._running.discard(campaign_id)
        self._cancel_retrigger(campaign_id)
        await self.store.update_campaign_status(campaign_id, CampaignStatus.COMPLETED)
        stats = await self.store.update_campaign_stats(campaign_id)
        logger.info(
            "Campaign completed",
            campaign_id=campaign_id,
            completed_calls=stats.completed_calls,
            failed_calls=stats.failed_calls,
            appointments=stats.appointments,
        )

    async def _advance(self, campaign_id: str) -> None:
        """Fill free slots, then leave exactly one re-trigger behind."""
        while campaign_id in self._running:
            try:
                result = await self.dispatch_next(campaign_id)
            except OriginationError as exc:
                logger.warning("Dispatch attempt failed; continuing queue", campaign_id=campaign_id, error=str(exc))
                self._schedule(campaign_id, self.config.dispatch_interval_sec)
                return
            except Exception as exc:
                logger.error("Dispatcher error", campaign_id=campaign_id, error=str(exc), exc_info=True)
                self._schedule(campaign_id, self.config.dispatch_interval_sec)
                return
            if result is DispatchResult.DISPATCHED and self.ledger.has_capacity:
                continue
            if result is DispatchResult.DISPATCHED:
                self._schedule(campaign_id, self.config.dispatch_interval_sec)
            return

    def _schedule(self, campaign_id: str, delay: float) -> None:
        if campaign_id not in self._running:
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        current = self._retriggers.get(campaign_id)
        if current is not None and current[0].pending:
            if current[1] <= due:
                return
            current[0].cancel()
        timer = ScheduledTask(delay, lambda: self._advance(campaign_id), name=f"advance-{campaign_id}")
        self._retriggers[campaign_id] = (timer, due)

    def _cancel_retrigger(self, campaign_id: str) -> None:
        current = self._retriggers.pop(campaign_id, None)
        if current is not None:
            current[0].cancel()

    def _kick(self, campaign_id: str) -> None:
        self._schedule(campaign_id, self.config.release_advance_delay_sec)

    # ------------------------------------------------------------------
    # Telephony events
    # ------------------------------------------------------------------
    async def _on_unanswered_timeout(self, phone_number: str) -> None:
        handler = self.ledger.expire(phone_number)
        if handler is None:
            return
        _CALL_OUTCOMES.labels(outcome="no_answer").inc()
        logger.info("Call unanswered; releasing slot", phone_number=phone_number, channel_id=handler.channel_id)
        await self._set_contact_status(handler.contact.id, ContactStatus.NO_ANSWER)
        if handler.channel_id:
            await self.telephony.hangup(handler.channel_id)
        self._forget_channel(handler.channel_id)
        await self._refresh_stats(handler.campaign_id)
        self._kick(handler.campaign_id)

    async def on_call_answered(self, event: AnsweredCall) -> None:
        handler = self.ledger.get(event.phone_number) or self.ledger.find_by_channel(event.channel_id)
        leg = event.leg or BridgeLeg(self.telephony, event.channel_id, event.bridge_id)
        if handler is None:
            logger.warning("Answered call has no pending handler; hanging up", phone_number=event.phone_number, channel_id=event.channel_id)
            await leg.hangup()
            return
        if self.ledger.mark_answered(handler.phone_number) is None:
            return
        _CALL_OUTCOMES.labels(outcome="answered").inc()
        logger.info("Call answered", phone_number=handler.phone_number, channel_id=event.channel_id, bridge_id=event.bridge_id)
        await self._converse(handler, event, leg)

    async def _converse(self, handler: CallHandler, event: AnsweredCall, leg) -> None:
        contact = handler.contact
        call: Optional[Call] = None
        call_status = CallStatus.FAILED
        try:
            call = await self.store.create_call(contact, event.channel_id, event.bridge_id)
            await self.store.update_call_status(call.id, CallStatus.ANSWERED)
            await self.conversation.run(CallSession(call=call, contact=contact, leg=leg))
            call_status = CallStatus.COMPLETED
        except Exception as exc:
            logger.error("Answered call failed", phone_number=handler.phone_number, error=str(exc), exc_info=True)
        finally:
            await leg.hangup()
            self._forget_channel(event.channel_id)
            if call is not None:
                await self._store_op(
                    "update call status",
                    self.store.update_call_status(call.id, call_status, end_time=datetime.now()),
                )
            contact_status = ContactStatus.COMPLETED if call_status == CallStatus.COMPLETED else ContactStatus.FAILED
            await self._set_contact_status(contact.id, contact_status)
            self.ledger.release(handler.phone_number)
            _CALL_OUTCOMES.labels(outcome=call_status.value).inc()
            await self._refresh_stats(handler.campaign_id)
            self._kick(handler.campaign_id)

    async def on_call_failed(self, event: CallEnded) -> None:
        await self._end_unanswered(event.channel_id, event.reason)

    async def on_call_ended(self, event: CallEnded) -> None:
        """Channel gone. Answered calls are finished by their own conversation."""
        await self._end_unanswered(event.channel_id, event.reason)

    async def _end_unanswered(self, channel_id: str, reason: str) -> None:
        handler = self.ledger.find_by_channel(channel_id)
        if handler is None or handler.answered:
            return
        if self.ledger.release(handler.phone_number) is None:
            return
        failed = any(cause in (reason or "").lower() for cause in _FAILED_CAUSES)
        status = ContactStatus.FAILED if failed else ContactStatus.NO_ANSWER
        _CALL_OUTCOMES.labels(outcome=status.value).inc()
        logger.info("Call ended before answer", phone_number=handler.phone_number, channel_id=channel_id, reason=reason, status=status.value)
        await self._set_contact_status(handler.contact.id, status)
        self._forget_channel(channel_id)
        await self._refresh_stats(handler.campaign_id)
        self._kick(handler.campaign_id)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------
    def reconcile(self) -> int:
        return self.ledger.reconcile()

    def get_status(self) -> Dict[str, Any]:
        """Ledger snapshot; a counter that drifted from the handler set is re-derived first."""
        if self.ledger.active_calls != len(self.ledger.handlers()):
            self.reconcile()
        status = self.ledger.snapshot()
        status["running_campaigns"] = sorted(self._running)
        return status

    async def shutdown(self) -> None:
        for campaign_id in list(self._running):
            try:
                await self.pause_campaign(campaign_id)
            except Exception as exc:
                logger.warning("Failed to pause campaign during shutdown", campaign_id=campaign_id, error=str(exc))
        for campaign_id in list(self._retriggers):
            self._cancel_retrigger(campaign_id)
        for handler in self.ledger.handlers():
            if handler.timeout is not None:
                handler.timeout.cancel()
        logger.info("Dispatcher stopped", active_calls=self.ledger.active_calls)

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------
    def _forget_channel(self, channel_id: Optional[str]) -> None:
        if channel_id:
            self.telephony.forget_channel(channel_id)

    async def _store_op(self, description: str, coro) -> Any:
        try:
            return await coro
        except Exception as exc:
            logger.error("Store operation failed", operation=description, error=str(exc))
            return None

    async def _set_contact_status(self, contact_id: str, status: ContactStatus) -> None:
        await self._store_op(f"set contact {status.value}", self.store.update_contact_status(contact_id, status))

    async def _refresh_stats(self, campaign_id: str) -> None:
        await self._store_op("update campaign stats", self.store.update_campaign_stats(campaign_id))
