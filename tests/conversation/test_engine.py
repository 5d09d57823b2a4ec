"""
Conversation engine tests: the turn loop, reprompts, fast paths, stop
conditions and the single post-call analysis, driven through scripted
audio/STT/LLM fakes.
"""

from datetime import date, datetime

import pytest

from voicebot.audio.pipeline import PlaybackResult
from voicebot.config import AnalysisConfig, ConversationConfig
from voicebot.conversation.classifiers import HeuristicIntentAnalyzer
from voicebot.conversation.context import ConversationContextStore
from voicebot.conversation.engine import CallSession, ConversationEngine, ConversationState
from voicebot.conversation.pitch import QuickReplyCatalog
from voicebot.core.models import Speaker
from voicebot.core.store import InMemoryCampaignStore
from voicebot.pipelines.base import LLMResponse, ProviderError, Transcript

TODAY = date(2026, 10, 19)  # a Monday
SILENCE = object()


class RecordingFailed(RuntimeError):
    pass


class FakeLeg:
    channel_id = "PJSIP/trunk-0007"

    def __init__(self):
        self.hung_up = False

    async def hangup(self):
        self.hung_up = True


class FakeCaller:
    """Scripted caller shared by the audio and STT fakes.

    Script entries: text, None (nothing recorded), SILENCE (no voice),
    an exception instance (STT failure) or RecordingFailed (audio error).
    The caller hangs up once the script runs out.
    """

    def __init__(self, leg, script):
        self.leg = leg
        self.script = list(script)
        self.by_path = {}
        self.count = 0

    def next_recording(self):
        if not self.script:
            self.leg.hung_up = True
            return None
        entry = self.script.pop(0)
        if isinstance(entry, RecordingFailed):
            raise entry
        if entry is None:
            return None
        self.count += 1
        path = f"/tmp/rec/turn_{self.count}.wav"
        self.by_path[path] = entry
        return path


class FakeAudio:
    def __init__(self, caller):
        self.caller = caller
        self.spoken = []
        self.assets_played = []
        self.rendered = []

    def asset_name(self, kind, call_ref):
        return f"{kind}_{call_ref}"

    async def render_speech(self, text, name, call_id="prerender"):
        self.rendered.append(text)
        return f"custom/{name}"

    async def record_caller_turn(self, leg, max_duration=None, silence_threshold=None):
        return self.caller.next_recording()

    async def has_voice_activity(self, path):
        return self.caller.by_path[path] is not SILENCE

    async def enhance_for_transcription(self, path):
        return path

    async def play_asset(self, leg, asset):
        self.assets_played.append(asset)
        return PlaybackResult(True, asset)

    async def synthesize_and_play(self, leg, text, call_id):
        self.spoken.append(text)
        return PlaybackResult(True, f"custom/tts_{len(self.spoken)}")


class FakeSTT:
    def __init__(self, caller):
        self.caller = caller

    async def transcribe_file(self, call_id, path, options=None):
        entry = self.caller.by_path[path]
        if isinstance(entry, Exception):
            raise entry
        return Transcript(text=entry)


class FakeLLM:
    def __init__(self, replies=(), on_generate=None):
        self.replies = list(replies)
        self.requests = []
        self.on_generate = on_generate

    async def generate(self, call_id, messages, options=None):
        self.requests.append(messages)
        if self.on_generate is not None:
            self.on_generate()
        reply = self.replies.pop(0) if self.replies else "Claro."
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(text=reply)


class CountingAnalyzer(HeuristicIntentAnalyzer):
    def __init__(self):
        super().__init__(today=lambda: TODAY)
        self.calls = 0

    async def analyze(self, turns):
        self.calls += 1
        return await super().analyze(turns)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Harness:
    def __init__(self, script, replies=(), *, contact=None, store=None, quick_replies=None, clock=None, on_generate=None, **config):
        params = dict(pitch_enabled=False, quick_replies_enabled=quick_replies is not None)
        params.update(config)
        self.config = ConversationConfig(**params)
        self.store = store or InMemoryCampaignStore()
        campaign = self.store.add_campaign("Naves", [contact or {"phone_number": "4421234567", "name": "Juan"}], campaign_id="camp")
        self.contact = self.store.contacts[campaign.contact_ids[0]]
        self.leg = FakeLeg()
        self.caller = FakeCaller(self.leg, script)
        self.audio = FakeAudio(self.caller)
        self.llm = FakeLLM(replies, on_generate)
        self.analyzer = CountingAnalyzer()
        self.contexts = ConversationContextStore(self.config.history_limit)
        kwargs = {"clock": clock} if clock is not None else {}
        self.engine = ConversationEngine(
            self.config,
            self.audio,
            FakeSTT(self.caller),
            self.llm,
            self.store,
            analysis_config=AnalysisConfig(),
            analyzer=self.analyzer,
            contexts=self.contexts,
            quick_replies=quick_replies,
            **kwargs,
        )

    async def run(self):
        call = await self.store.create_call(self.contact, self.leg.channel_id, None)
        self.call = call
        return await self.engine.run(CallSession(call=call, contact=self.contact, leg=self.leg))


@pytest.mark.asyncio
class TestTurnLoop:
    async def test_transcription_failure_reprompts_and_continues(self):
        harness = Harness([ProviderError("stt down"), "¿Cuánto cuesta la renta?"], ["Son 80 mil pesos al mes."])

        outcome = await harness.run()

        assert outcome.end_reason == "hangup"
        assert outcome.error is None
        assert harness.config.reprompts.not_heard in harness.audio.spoken
        assert [(t.speaker, t.text) for t in outcome.turns] == [
            (Speaker.BOT, harness.audio.spoken[0]),
            (Speaker.CLIENT, "¿Cuánto cuesta la renta?"),
            (Speaker.BOT, "Son 80 mil pesos al mes."),
        ]
        assert [t.sequence for t in outcome.turns] == [1, 2, 3]
        assert harness.store.turns[harness.call.id] == outcome.turns
        assert harness.call.recording_path == "/tmp/rec/turn_2.wav"

    async def test_reprompts_for_silence_and_missing_audio(self):
        harness = Harness([None, SILENCE, ""])

        outcome = await harness.run()

        reprompts = harness.config.reprompts
        assert harness.audio.spoken[1:] == [reprompts.not_heard, reprompts.speak_closer, reprompts.speak_closer]
        # Reprompts are not conversation turns
        assert len(outcome.turns) == 1
        assert outcome.exchanges == 4

    async def test_greeting_filled_from_contact(self):
        harness = Harness([], contact={"phone_number": "4421234567", "name": "Juan", "location": "Querétaro"})

        await harness.run()

        assert harness.audio.spoken[0] == (
            "Hola Juan, habla Sofía de Navetec. Te llamo porque tenemos una nave industrial "
            "disponible en Querétaro que podría interesarte. ¿Tienes un minuto?"
        )

    async def test_turn_cap_speaks_farewell_then_books_appointment(self):
        harness = Harness(
            ["Sí, me interesa, quiero ir a verla", "El jueves a las 4 está bien"],
            ["¡Excelente! ¿Qué día te queda mejor?", "Perfecto, te agendo el jueves a las 4."],
            max_turns=2,
        )

        outcome = await harness.run()

        assert outcome.end_reason == "turn_cap"
        assert harness.audio.spoken[-1] == harness.config.farewell
        assert outcome.states == [
            ConversationState.GREETING,
            ConversationState.LISTENING,
            ConversationState.RESPONDING,
            ConversationState.LISTENING,
            ConversationState.RESPONDING,
            ConversationState.LISTENING,
            ConversationState.CLOSING,
            ConversationState.ANALYZING,
            ConversationState.DONE,
        ]
        assert outcome.analysis.interest_level == "high"
        appointment = harness.store.appointments[outcome.appointment_id]
        assert appointment.scheduled_at == datetime(2026, 10, 22, 16, 0)
        assert appointment.contact_id == harness.contact.id
        assert appointment.call_id == harness.call.id
        assert harness.store.campaigns["camp"].stats.appointments == 1

    async def test_time_cap(self):
        clock = FakeClock()

        def advance():
            clock.now += 301

        harness = Harness(["¿Dónde está la nave?", "ok"], ["Está en el parque industrial."], clock=clock, on_generate=advance)

        outcome = await harness.run()

        assert outcome.end_reason == "time_cap"
        assert outcome.exchanges == 1
        assert harness.audio.spoken[-1] == harness.config.farewell

    async def test_closing_reply_ends_call(self):
        harness = Harness(["¿De qué se trata?", "no"], ["Entiendo, gracias por tu tiempo. Hasta luego."])

        outcome = await harness.run()

        assert outcome.end_reason == "farewell"
        assert harness.audio.spoken[-1] == "Entiendo, gracias por tu tiempo. Hasta luego."
        assert harness.config.farewell not in harness.audio.spoken
        # The second scripted answer was never recorded
        assert harness.caller.script == ["no"]

    async def test_generation_failure_uses_reprompt_text(self):
        harness = Harness(["¿De qué se trata?"], [ProviderError("llm down")])

        outcome = await harness.run()

        assert outcome.turns[-1].text == harness.config.reprompts.generation_failed
        assert outcome.error is None

    async def test_history_reaches_generation(self):
        harness = Harness(["¿Cuánto mide?", "¿Y el precio?"], ["Mide 1,200 metros.", "Son 80 mil."],
                          contact={"phone_number": "4421234567", "name": "Juan", "size": "1200"})

        await harness.run()

        last = harness.llm.requests[-1]
        assert last[0]["role"] == "system"
        assert "Tamaño: 1200" in last[1]["content"]
        assert [m["content"] for m in last[2:]][-3:] == ["¿Cuánto mide?", "Mide 1,200 metros.", "¿Y el precio?"]

    async def test_system_prompt_override_from_store(self):
        store = InMemoryCampaignStore()
        store.settings["system_prompt"] = "Eres {agent} de {company}. Usa {estilo}."
        harness = Harness(["¿Quién eres?"], ["Soy Sofía."], store=store)

        await harness.run()

        assert harness.llm.requests[0][0]["content"] == "Eres Sofía de Navetec. Usa {estilo}."


@pytest.mark.asyncio
class TestFastPaths:
    async def test_negative_first_answer_says_goodbye_without_generation(self):
        harness = Harness(["No me interesa, gracias"])

        outcome = await harness.run()

        assert outcome.end_reason == "farewell"
        assert harness.llm.requests == []
        assert harness.audio.spoken[-1] == harness.config.farewell
        assert outcome.analysis.interest_level == "low"
        assert outcome.appointment_id is None

    async def test_positive_first_answer_plays_prerendered_pitch(self):
        contact = {"phone_number": "4421234567", "name": "Juan", "location": "Querétaro", "size": "1200", "price": "85000"}
        harness = Harness(["Sí, claro, dime"], contact=contact, pitch_enabled=True)

        outcome = await harness.run()

        assert harness.llm.requests == []
        assert harness.audio.rendered == [outcome.turns[-1].text]
        assert harness.audio.assets_played == [f"custom/pitch_{harness.call.id}"]
        assert "Querétaro" in outcome.turns[-1].text

    async def test_positive_answer_without_pitch_generates(self):
        harness = Harness(["Sí, dime"], ["Tenemos una nave en renta."])

        outcome = await harness.run()

        assert len(harness.llm.requests) == 1
        assert outcome.turns[-1].text == "Tenemos una nave en renta."

    async def test_quick_reply_skips_generation(self):
        catalog = QuickReplyCatalog(company="Navetec", agent="Sofía")
        harness = Harness(["¿Quién habla?"], quick_replies=catalog)

        outcome = await harness.run()

        assert harness.llm.requests == []
        assert outcome.turns[-1].text == catalog.text_for("who_is_calling")


@pytest.mark.asyncio
class TestFailures:
    async def test_error_mid_loop_still_analyzes_once(self):
        harness = Harness(["Sí, me interesa", RecordingFailed("record exploded")], ["Qué gusto."])

        outcome = await harness.run()

        assert outcome.end_reason == "error"
        assert "record exploded" in outcome.error
        assert harness.analyzer.calls == 1
        assert outcome.analysis is not None
        assert outcome.analysis.interest
        assert ConversationState.CLOSING not in outcome.states
        assert outcome.states[-2:] == [ConversationState.ANALYZING, ConversationState.DONE]
        assert harness.audio.spoken[-1] == harness.config.farewell
        assert harness.contexts.active_count == 0

    async def test_store_failures_do_not_lose_transcript(self):
        class FlakyStore(InMemoryCampaignStore):
            async def add_turn(self, call_id, turn):
                raise ConnectionError("db gone")

        harness = Harness(["Me interesa, quiero agendar una visita"], ["¡Perfecto!"], store=FlakyStore())

        outcome = await harness.run()

        assert len(outcome.turns) == 3
        assert outcome.appointment_id is not None

    async def test_analyzer_failure_is_contained(self):
        harness = Harness(["Hola"])

        async def broken(turns):
            raise ValueError("bad analysis")

        harness.engine.analyzer.analyze = broken

        outcome = await harness.run()

        assert outcome.analysis is None
        assert outcome.appointment_id is None
        assert harness.contexts.active_count == 0

    async def test_appointment_policy_switches(self):
        harness = Harness(["Me interesa, quiero agendar una visita"], ["¡Perfecto!"])
        harness.engine.policy.on_appointment_intent = False
        harness.engine.policy.on_high_interest = False
        harness.engine.policy.on_agreement = False
        harness.engine.policy.on_date_and_time = False

        outcome = await harness.run()

        assert outcome.analysis.wants_appointment
        assert outcome.appointment_id is None
