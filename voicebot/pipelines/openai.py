"""
OpenAI adapters for the conversation engine.

- `OpenAISTTAdapter`: audio.transcriptions (Whisper) on recorded WAV files
- `OpenAILLMAdapter`: Chat Completions for replies and post-call analysis
- `OpenAITTSAdapter`: audio.speech returning raw PCM16 at 24 kHz

All three share one aiohttp session per adapter, created lazily through an
injectable `session_factory` so tests can substitute a fake.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..config import OpenAIProviderConfig
from ..logging_config import get_logger
from .base import LLMComponent, LLMResponse, ProviderError, STTComponent, SynthesizedAudio, Transcript, TTSComponent

logger = get_logger(__name__)

_USER_AGENT = "voicebot-dialer/1.0"


def _make_http_headers(config: OpenAIProviderConfig) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "User-Agent": _USER_AGENT,
    }
    if config.organization:
        headers["OpenAI-Organization"] = config.organization
    return headers


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class _OpenAIComponent:
    def __init__(
        self,
        config: OpenAIProviderConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()
        return self._session

    def _require_key(self, component: str) -> None:
        if not self.config.api_key:
            raise ProviderError(f"OpenAI {component} requires an API key")


class OpenAISTTAdapter(_OpenAIComponent, STTComponent):
    async def transcribe_file(self, call_id: str, path: str, options: Optional[Dict[str, Any]] = None) -> Transcript:
        self._require_key("STT")
        options = options or {}
        try:
            audio = await asyncio.get_running_loop().run_in_executor(None, _read_file, path)
        except OSError as exc:
            raise ProviderError(f"cannot read recording {path}: {exc}") from exc
        if not audio:
            return Transcript(text="")

        form = aiohttp.FormData()
        form.add_field("file", audio, filename=os.path.basename(path) or "audio.wav", content_type="audio/wav")
        form.add_field("model", str(options.get("model", self.config.stt_model)))
        form.add_field("response_format", "verbose_json")
        language = options.get("language")
        if language:
            form.add_field("language", str(language))
        prompt = options.get("prompt", self.config.stt_prompt)
        if prompt:
            form.add_field("prompt", str(prompt))

        session = await self._ensure_session()
        timeout = float(options.get("timeout_sec", self.config.response_timeout_sec))
        request_id = f"openai-stt-{uuid.uuid4().hex[:12]}"
        started_at = time.perf_counter()
        try:
            async with session.post(
                self.config.stt_base_url,
                data=form,
                headers=_make_http_headers(self.config),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                body = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"OpenAI STT request failed: {exc}") from exc
        latency_ms = (time.perf_counter() - started_at) * 1000.0

        if status >= 400:
            logger.error("OpenAI STT request failed", call_id=call_id, request_id=request_id, status=status, body_preview=body[:200])
            raise ProviderError(f"OpenAI STT request failed (status {status})")

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return Transcript(text=body.strip())
        text = (data.get("text") or "").strip()
        logger.info(
            "OpenAI STT transcript received",
            call_id=call_id,
            request_id=request_id,
            latency_ms=round(latency_ms, 2),
            transcript_preview=text[:80],
        )
        return Transcript(text=text, language=data.get("language"), duration=data.get("duration"))


class OpenAILLMAdapter(_OpenAIComponent, LLMComponent):
    async def generate(
        self,
        call_id: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require_key("LLM")
        options = options or {}
        payload: Dict[str, Any] = {
            "model": options.get("model", self.config.chat_model),
            "messages": messages,
            "temperature": options.get("temperature", self.config.temperature),
            "max_tokens": options.get("max_tokens", self.config.max_tokens),
        }
        for key in ("presence_penalty", "frequency_penalty"):
            value = options.get(key, getattr(self.config, key))
            if value is not None:
                payload[key] = value
        if options.get("response_format"):
            payload["response_format"] = {"type": options["response_format"]}

        session = await self._ensure_session()
        url = self.config.chat_base_url.rstrip("/") + "/chat/completions"
        timeout = float(options.get("timeout_sec", self.config.response_timeout_sec))
        logger.debug("OpenAI chat completion request", call_id=call_id, model=payload["model"], messages=len(messages))
        try:
            async with session.post(
                url,
                json=payload,
                headers=_make_http_headers(self.config),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"OpenAI chat completion failed: {exc}") from exc

        if status >= 400:
            logger.error("OpenAI chat completion failed", call_id=call_id, status=status, body_preview=body[:128])
            raise ProviderError(f"OpenAI chat completion failed (status {status})")

        try:
            data = json.loads(body)
            choice = (data.get("choices") or [])[0]
            text = ((choice.get("message") or {}).get("content") or "").strip()
        except (json.JSONDecodeError, IndexError, AttributeError) as exc:
            raise ProviderError("OpenAI chat completion returned no usable choice") from exc
        return LLMResponse(text=text, usage=data.get("usage") or {})


class OpenAITTSAdapter(_OpenAIComponent, TTSComponent):
    async def synthesize(self, call_id: str, text: str, options: Optional[Dict[str, Any]] = None) -> SynthesizedAudio:
        self._require_key("TTS")
        options = options or {}
        payload = {
            "model": options.get("model", self.config.tts_model),
            "input": text,
            "voice": options.get("voice", self.config.voice),
            "speed": options.get("speed", self.config.speed),
            "response_format": "pcm",
        }
        session = await self._ensure_session()
        timeout = float(options.get("timeout_sec", self.config.tts_timeout_sec))
        started_at = time.perf_counter()
        try:
            async with session.post(
                self.config.tts_base_url,
                json=payload,
                headers=_make_http_headers(self.config),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                raw = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"OpenAI TTS request failed: {exc}") from exc

        if status >= 400:
            logger.error(
                "OpenAI TTS request failed",
                call_id=call_id,
                status=status,
                body_preview=raw[:128].decode("utf-8", errors="ignore"),
            )
            raise ProviderError(f"OpenAI TTS request failed (status {status})")
        if not raw:
            raise ProviderError("OpenAI TTS returned no audio")

        logger.info(
            "OpenAI TTS synthesized",
            call_id=call_id,
            bytes=len(raw),
            latency_ms=round((time.perf_counter() - started_at) * 1000.0, 2),
        )
        return SynthesizedAudio(pcm=raw, sample_rate=self.config.tts_sample_rate_hz)
