"""
Conversation engine: the per-call turn loop.

    greeting -> listening <-> responding -> closing -> analyzing -> done

Any uncaught error inside the loop escapes straight to analyzing, so a
partial conversation is still analyzed. Analysis runs exactly once per
started conversation and the call's context is always released.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from prometheus_client import Counter, Histogram

from ..audio.legs import MediaLeg
from ..audio.pipeline import AudioTurnPipeline
from ..config import AnalysisConfig, ConversationConfig
from ..core.models import Appointment, Call, Contact, ConversationTurn, Speaker
from ..core.store import CampaignStore
from ..logging_config import bind_call_id, get_logger
from ..pipelines.base import LLMComponent, STTComponent
from .classifiers import (
    AppointmentPolicy,
    ClosingClassifier,
    HeuristicIntentAnalyzer,
    IntentAnalysis,
    IntentAnalyzer,
    PhraseClosingClassifier,
    first_response_sentiment,
)
from .context import ConversationContextStore
from .pitch import QuickReplyCatalog, build_pitch

logger = get_logger(__name__)

_TURN_LATENCY = Histogram(
    "voicebot_turn_latency_seconds",
    "Time from caller utterance to the end of the bot reply",
    buckets=(0.5, 1.0, 2.0, 3.0, 5.0, 8.0, 13.0, 21.0),
)
_CONVERSATIONS = Counter(
    "voicebot_conversations_total",
    "Finished conversations by end reason",
    ["end_reason"],
)
_APPOINTMENTS = Counter(
    "voicebot_appointments_total",
    "Appointments emitted by post-call analysis",
)


class ConversationState(str, Enum):
    GREETING = "greeting"
    LISTENING = "listening"
    RESPONDING = "responding"
    CLOSING = "closing"
    ANALYZING = "analyzing"
    DONE = "done"


@dataclass
class CallSession:
    call: Call
    contact: Contact
    leg: MediaLeg


@dataclass
class ConversationOutcome:
    call_id: str
    states: List[ConversationState] = field(default_factory=list)
    turns: List[ConversationTurn] = field(default_factory=list)
    end_reason: str = ""
    analysis: Optional[IntentAnalysis] = None
    appointment_id: Optional[str] = None
    error: Optional[str] = None
    # Listening attempts, reprompts included
    exchanges: int = 0


class _SafeFormat(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def _fill(template: str, **values) -> str:
    try:
        text = template.format_map(_SafeFormat(values))
    except (ValueError, IndexError):
        return template
    text = re.sub(r"\s+([,.?!])", r"\1", text)
    return re.sub(r"\s{2,}", " ", text).strip()


@dataclass
class _Run:
    session: CallSession
    outcome: ConversationOutcome
    started: float
    first_response: bool = True
    pitch_text: Optional[str] = None
    pitch_task: Optional[asyncio.Task] = None

    @property
    def call_id(self) -> str:
        return self.session.call.id


class ConversationEngine:
    def __init__(
        self,
        config: ConversationConfig,
        audio: AudioTurnPipeline,
        stt: STTComponent,
        llm: LLMComponent,
        store: CampaignStore,
        *,
        analysis_config: Optional[AnalysisConfig] = None,
        closing: Optional[ClosingClassifier] = None,
        analyzer: Optional[IntentAnalyzer] = None,
        policy: Optional[AppointmentPolicy] = None,
        contexts: Optional[ConversationContextStore] = None,
        quick_replies: Optional[QuickReplyCatalog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.audio = audio
        self.stt = stt
        self.llm = llm
        self.store = store
        self.analysis_config = analysis_config or AnalysisConfig()
        self.closing = closing or PhraseClosingClassifier(config.closing_phrases)
        self.analyzer = analyzer or HeuristicIntentAnalyzer()
        self.policy = policy or AppointmentPolicy.from_config(self.analysis_config)
        self.contexts = contexts or ConversationContextStore(config.history_limit)
        self.quick_replies = quick_replies if config.quick_replies_enabled else None
        self._clock = clock

    async def run(self, session: CallSession) -> ConversationOutcome:
        outcome = ConversationOutcome(call_id=session.call.id)
        run = _Run(session=session, outcome=outcome, started=self._clock())
        with bind_call_id(run.call_id):
            logger.info("Conversation started", phone_number=session.contact.phone_number, channel_id=session.leg.channel_id)
            self.contexts.open(run.call_id, session.contact.talking_points())
            try:
                try:
                    await self._converse(run)
                except Exception as exc:
                    outcome.error = str(exc) or type(exc).__name__
                    outcome.end_reason = "error"
                    logger.error("Conversation failed; analyzing partial transcript", error=outcome.error, exc_info=True)
                    await self._say_goodbye_after_error(run)
                self._enter(run, ConversationState.ANALYZING)
                await self._analyze(run)
            finally:
                if run.pitch_task is not None and not run.pitch_task.done():
                    run.pitch_task.cancel()
                self.contexts.clear(run.call_id)
                self._enter(run, ConversationState.DONE)
            _CONVERSATIONS.labels(end_reason=outcome.end_reason or "unknown").inc()
            logger.info(
                "Conversation finished",
                end_reason=outcome.end_reason,
                exchanges=outcome.exchanges,
                turns=len(outcome.turns),
                appointment_id=outcome.appointment_id,
            )
        return outcome

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------
    def _enter(self, run: _Run, state: ConversationState) -> None:
        states = run.outcome.states
        if not states or states[-1] is not state:
            states.append(state)

    async def _converse(self, run: _Run) -> None:
        contact = run.session.contact
        self._enter(run, ConversationState.GREETING)
        if self.config.pitch_enabled and contact.talking_points():
            run.pitch_text = build_pitch(contact)
            run.pitch_task = asyncio.create_task(
                self.audio.render_speech(run.pitch_text, self.audio.asset_name("pitch", run.call_id), call_id=run.call_id)
            )
        await self._speak(run, self._greeting(contact))

        self._enter(run, ConversationState.LISTENING)
        while True:
            reason = self._stop_reason(run)
            if reason:
                run.outcome.end_reason = reason
                break
            text = await self._listen(run)
            run.outcome.exchanges += 1
            if text is None:
                continue
            self._enter(run, ConversationState.RESPONDING)
            if await self._respond(run, text):
                run.outcome.end_reason = "farewell"
                break
            self._enter(run, ConversationState.LISTENING)

        self._enter(run, ConversationState.CLOSING)
        if run.outcome.end_reason in ("turn_cap", "time_cap") and not run.session.leg.hung_up:
            await self._speak(run, self.config.farewell)

    def _stop_reason(self, run: _Run) -> Optional[str]:
        if run.session.leg.hung_up:
            return "hangup"
        if run.outcome.exchanges >= self.config.max_turns:
            return "turn_cap"
        if self._clock() - run.started >= self.config.max_call_duration_sec:
            return "time_cap"
        return None

    def _greeting(self, contact: Contact) -> str:
        return _fill(
            self.config.greeting,
            name=contact.name or "",
            agent=self.config.agent_name,
            company=self.config.company_name,
            location=contact.location or "tu zona",
        )

    async def _listen(self, run: _Run) -> Optional[str]:
        """One caller turn; None when the turn ended in a reprompt."""
        leg = run.session.leg
        reprompts = self.config.reprompts
        path = await self.audio.record_caller_turn(leg, self.config.listen_max_duration_sec, self.config.listen_silence_sec)
        if path is None:
            if not leg.hung_up:
                await self._reprompt(run, reprompts.not_heard)
            return None
        if not await self.audio.has_voice_activity(path):
            await self._reprompt(run, reprompts.speak_closer)
            return None

        started = self._clock()
        audio_path = await self.audio.enhance_for_transcription(path)
        try:
            transcript = await asyncio.wait_for(
                self.stt.transcribe_file(run.call_id, audio_path, {"language": self.config.language}),
                self.config.stt_timeout_sec,
            )
        except Exception as exc:
            logger.warning("Transcription failed; reprompting", error=str(exc) or type(exc).__name__)
            await self._reprompt(run, reprompts.not_heard)
            return None

        text = (transcript.text or "").strip()
        if not text:
            await self._reprompt(run, reprompts.speak_closer)
            return None
        await self._record_turn(run, Speaker.CLIENT, text, audio_ref=path, latency_ms=(self._clock() - started) * 1000.0)
        self.contexts.append(run.call_id, "user", text)
        if run.session.call.recording_path is None:
            run.session.call.recording_path = path
            try:
                await self.store.set_call_recording(run.call_id, path)
            except Exception as exc:
                logger.warning("Failed to store call recording path", error=str(exc))
        return text

    async def _respond(self, run: _Run, text: str) -> bool:
        """Speak a reply to `text`; True when the reply closes the call."""
        started = self._clock()
        reply: Optional[str] = None
        asset: Optional[str] = None

        if run.first_response:
            run.first_response = False
            sentiment = first_response_sentiment(text)
            if sentiment == "negative":
                reply = self.config.farewell
            elif sentiment == "positive" and run.pitch_text:
                reply, asset = run.pitch_text, await self._pitch_asset(run)

        if reply is None and self.quick_replies is not None:
            key = self.quick_replies.match(text)
            if key:
                logger.debug("Quick reply matched", key=key)
                reply, asset = self.quick_replies.text_for(key), self.quick_replies.asset_for(key)

        if reply is None:
            reply = await self._generate(run)

        await self._speak(run, reply, asset=asset, started=started)
        _TURN_LATENCY.observe(self._clock() - started)
        return self.closing.is_closing(reply)

    async def _pitch_asset(self, run: _Run) -> Optional[str]:
        if run.pitch_task is None:
            return None
        try:
            return await run.pitch_task
        except Exception as exc:
            logger.warning("Pitch pre-render failed; synthesizing live", error=str(exc))
            return None

    async def _generate(self, run: _Run) -> str:
        messages = self.contexts.build_messages(run.call_id, await self._system_prompt())
        try:
            response = await asyncio.wait_for(self.llm.generate(run.call_id, messages), self.config.llm_timeout_sec)
        except Exception as exc:
            logger.warning("Reply generation failed", error=str(exc) or type(exc).__name__)
            return self.config.reprompts.generation_failed
        if not response.text.strip():
            logger.warning("Reply generation returned empty text")
            return self.config.reprompts.generation_failed
        return response.text.strip()

    async def _system_prompt(self) -> str:
        template = self.config.system_prompt
        try:
            template = await self.store.get_setting("system_prompt") or template
        except Exception as exc:
            logger.warning("System prompt lookup failed; using configured prompt", error=str(exc))
        return _fill(template, agent=self.config.agent_name, company=self.config.company_name)

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------
    async def _speak(self, run: _Run, text: str, *, asset: Optional[str] = None, started: Optional[float] = None) -> None:
        started = self._clock() if started is None else started
        leg = run.session.leg
        if asset:
            result = await self.audio.play_asset(leg, asset)
        else:
            result = await self.audio.synthesize_and_play(leg, text, run.call_id)
        await self._record_turn(run, Speaker.BOT, text, audio_ref=result.asset, latency_ms=(self._clock() - started) * 1000.0)
        self.contexts.append(run.call_id, "assistant", text)

    async def _reprompt(self, run: _Run, text: str) -> None:
        await self.audio.synthesize_and_play(run.session.leg, text, run.call_id)

    async def _say_goodbye_after_error(self, run: _Run) -> None:
        if run.session.leg.hung_up:
            return
        try:
            await self.audio.synthesize_and_play(run.session.leg, self.config.farewell, run.call_id)
        except Exception as exc:
            logger.warning("Closing line after error failed", error=str(exc))

    async def _record_turn(
        self,
        run: _Run,
        speaker: Speaker,
        text: str,
        *,
        audio_ref: Optional[str] = None,
        latency_ms: Optional[float] = None,
    ) -> None:
        turn = ConversationTurn(
            sequence=len(run.outcome.turns) + 1,
            speaker=speaker,
            text=text,
            audio_ref=audio_ref,
            latency_ms=round(latency_ms, 1) if latency_ms is not None else None,
        )
        run.outcome.turns.append(turn)
        try:
            await self.store.add_turn(run.call_id, turn)
        except Exception as exc:
            logger.warning("Failed to persist conversation turn", sequence=turn.sequence, error=str(exc))

    # ------------------------------------------------------------------
    # Post-call analysis
    # ------------------------------------------------------------------
    async def _analyze(self, run: _Run) -> None:
        session, outcome = run.session, run.outcome
        try:
            analysis = await self.analyzer.analyze(outcome.turns)
        except Exception as exc:
            logger.error("Intent analysis failed", error=str(exc), exc_info=True)
            analysis = None
        outcome.analysis = analysis

        if analysis is not None and self.policy.should_create(analysis):
            appointment = Appointment(
                contact_id=session.contact.id,
                call_id=run.call_id,
                campaign_id=session.call.campaign_id,
                scheduled_at=analysis.scheduled_at(),
                interest_level=analysis.interest_level or self.analysis_config.default_interest_level,
                notes=analysis.notes or analysis.client_response,
            )
            try:
                outcome.appointment_id = await self.store.create_appointment(appointment)
                _APPOINTMENTS.inc()
                logger.info(
                    "Appointment created",
                    appointment_id=outcome.appointment_id,
                    scheduled_at=appointment.scheduled_at.isoformat() if appointment.scheduled_at else None,
                    interest_level=appointment.interest_level,
                )
            except Exception as exc:
                logger.error("Failed to create appointment", error=str(exc))

        try:
            await self.store.update_campaign_stats(session.call.campaign_id)
        except Exception as exc:
            logger.warning("Failed to update campaign stats", campaign_id=session.call.campaign_id, error=str(exc))
