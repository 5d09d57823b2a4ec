"""
Process wiring for the voicebot dialer.

`VoicebotService` builds every component from `AppConfig`, connects them
through telephony events and owns their lifecycle. `main()` is the console
entry point.
"""

import asyncio
import contextlib
import signal
import time
from typing import Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .agi.server import AGIServer
from .agi.session import AGISession
from .ari_client import AnsweredCall, ARIClient
from .audio.legs import AGILeg
from .audio.pipeline import AudioTurnPipeline
from .config import AppConfig, load_config, validate_production_config
from .conversation.classifiers import (
    AppointmentPolicy,
    HeuristicIntentAnalyzer,
    LLMIntentAnalyzer,
    PhraseClosingClassifier,
)
from .conversation.context import ConversationContextStore
from .conversation.engine import ConversationEngine
from .conversation.pitch import QuickReplyCatalog, normalize_for_speech
from .core.dispatcher import CallDispatcher
from .core.store import CampaignStore, InMemoryCampaignStore
from .logging_config import configure_logging, get_logger
from .pipelines.openai import OpenAILLMAdapter, OpenAISTTAdapter, OpenAITTSAdapter

logger = get_logger(__name__)


class VoicebotService:
    def __init__(self, config: AppConfig, store: Optional[CampaignStore] = None):
        self.config = config
        self.store = store or InMemoryCampaignStore()
        self._start_time = time.time()

        openai_cfg = config.providers.openai
        self.stt = OpenAISTTAdapter(openai_cfg)
        self.llm = OpenAILLMAdapter(openai_cfg)
        self.tts = OpenAITTSAdapter(openai_cfg)

        self.ari = ARIClient(config.asterisk)
        recording_dirs = [config.asterisk.recording_dir, config.audio.agi_recordings_dir]
        self.audio = AudioTurnPipeline(
            config.audio,
            self.tts,
            recording_dirs=recording_dirs,
            text_normalizer=normalize_for_speech,
            speech_speed=openai_cfg.speed,
        )

        conv = config.conversation
        self.quick_replies = QuickReplyCatalog(
            conv.quick_replies,
            company=conv.company_name,
            agent=conv.agent_name,
        )
        heuristic = HeuristicIntentAnalyzer()
        analyzer = (
            LLMIntentAnalyzer(
                self.llm,
                model=openai_cfg.analysis_model,
                timeout_sec=config.analysis.timeout_sec,
                fallback=heuristic,
            )
            if config.analysis.use_llm
            else heuristic
        )
        self.engine = ConversationEngine(
            conv,
            self.audio,
            self.stt,
            self.llm,
            self.store,
            analysis_config=config.analysis,
            closing=PhraseClosingClassifier(conv.closing_phrases),
            analyzer=analyzer,
            policy=AppointmentPolicy.from_config(config.analysis),
            contexts=ConversationContextStore(conv.history_limit),
            quick_replies=self.quick_replies,
        )
        self.dispatcher = CallDispatcher(config.dispatcher, self.store, self.ari, self.engine)

        self.agi_server: Optional[AGIServer] = None
        if config.asterisk.control_mode == "agi":
            self.agi_server = AGIServer(config.agi, self._on_agi_session)

        self.ari.add_event_handler("call_answered", self.dispatcher.on_call_answered)
        self.ari.add_event_handler("call_failed", self.dispatcher.on_call_failed)
        self.ari.add_event_handler("call_ended", self.dispatcher.on_call_ended)

        self._health_runner: Optional[web.AppRunner] = None
        self._background: set = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.config.store.seed_file and isinstance(self.store, InMemoryCampaignStore):
            self.store.load_seed(self.config.store.seed_file)

        await self.ari.connect()
        if self.agi_server is not None:
            await self.agi_server.start()
        self.audio.start_retention_sweep()
        if self.config.health.enabled:
            await self._start_health_server()
        if self.config.conversation.quick_replies_enabled:
            self._spawn(self.quick_replies.prepare(self.audio.render_speech))

        for campaign_id in self.config.campaigns.autostart:
            await self.dispatcher.start_campaign(campaign_id)
        logger.info("Voicebot service started", control_mode=self.config.asterisk.control_mode)

    async def run(self) -> None:
        """Start and consume telephony events; TelephonyUnavailable propagates."""
        await self.start()
        await self.ari.listen()

    async def stop(self) -> None:
        await self.dispatcher.shutdown()
        for task in list(self._background):
            task.cancel()
        await self.audio.stop_retention_sweep()
        if self.agi_server is not None:
            await self.agi_server.stop()
        await self.ari.disconnect()
        for adapter in (self.stt, self.llm, self.tts):
            with contextlib.suppress(Exception):
                await adapter.stop()
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
        logger.info("Voicebot service stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # AGI media legs
    # ------------------------------------------------------------------
    async def _on_agi_session(self, session: AGISession) -> None:
        """Hand an AGI channel to the dispatcher; returns when the conversation ends."""
        args = session.arguments
        phone_number = args[0] if args else await session.get_variable("VOICEBOT_PHONE")
        if not phone_number:
            logger.warning("AGI session without a dialed number; hanging up", channel=session.channel)
            await session.hangup()
            return
        await session.answer()
        leg = AGILeg(session, self.config.audio.agi_recordings_dir, self.config.audio.terminator_digit)
        await self.dispatcher.on_call_answered(
            AnsweredCall(phone_number=phone_number, channel_id=leg.channel_id, bridge_id=None, args=args, leg=leg)
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def _start_health_server(self) -> None:
        """Start aiohttp health/metrics server (defaults to 127.0.0.1:15000)."""
        try:
            app = web.Application()
            app.router.add_get("/health", self._health_handler)
            app.router.add_get("/metrics", self._metrics_handler)
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, self.config.health.host, self.config.health.port)
            await site.start()
            self._health_runner = runner
            logger.info("Health endpoint started", host=self.config.health.host, port=self.config.health.port)
        except Exception as exc:
            logger.error("Failed to start health endpoint", error=str(exc), exc_info=True)

    async def _health_handler(self, request):
        try:
            payload = {
                "status": "healthy" if self.ari.running else "degraded",
                "ari_connected": self.ari.running,
                "control_mode": self.config.asterisk.control_mode,
                "agi_port": self.agi_server.port if self.agi_server is not None else None,
                "uptime_seconds": int(time.time() - self._start_time),
                "active_conversations": self.engine.contexts.active_count,
                "quick_replies_ready": self.quick_replies.ready,
                "dispatcher": self.dispatcher.get_status(),
            }
            return web.json_response(payload)
        except Exception as exc:
            return web.json_response({"status": "error", "error": str(exc)}, status=500)

    async def _metrics_handler(self, request):
        """Expose Prometheus metrics."""
        try:
            data = generate_latest()
            # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
            return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})
        except Exception as exc:
            return web.Response(text=str(exc), status=500)


async def main():
    config = load_config()
    configure_logging(
        log_level=config.logging.level.upper(),
        log_to_file=config.logging.to_file,
        log_file_path=config.logging.file_path,
    )

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    service = VoicebotService(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    service_task = loop.create_task(service.run())
    shutdown_task = loop.create_task(shutdown_event.wait())
    done, _ = await asyncio.wait({service_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

    shutdown_task.cancel()
    await service.stop()
    if service_task in done:
        # Fatal telephony loss or startup failure
        service_task.result()
    else:
        service_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await service_task


def run() -> None:
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Voicebot dialer has shut down.")


if __name__ == "__main__":
    run()
