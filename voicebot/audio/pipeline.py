"""
Audio turn pipeline.

Records caller turns, prepares recordings for transcription, turns bot text
into a playable asset and plays it, and sweeps old audio files. Every step
can fail independently; failures degrade (unenhanced audio, fallback
prompt) instead of aborting the turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import os
import re
import time
import wave
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from prometheus_client import Counter, Histogram

from ..config import AudioConfig
from ..logging_config import get_logger
from ..pipelines.base import TTSComponent
from .legs import MediaLeg
from .resampler import (
    estimate_speech_seconds,
    is_empty_recording,
    pcm16_to_wav_file,
    resample_audio,
    wav_duration,
    wav_rms,
)

logger = get_logger(__name__)

_FALLBACK_PROMPTS = Counter(
    "voicebot_fallback_prompts_total",
    "Times the fallback prompt was played instead of synthesized speech",
)
_SYNTH_LATENCY = Histogram(
    "voicebot_tts_render_seconds",
    "Time to synthesize and stage one bot utterance",
    buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0),
)

# Prefixes of files this pipeline creates and is allowed to purge
PURGEABLE_PREFIXES = ("turn_", "tts_", "pitch_")
_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass
class PlaybackResult:
    success: bool
    asset: Optional[str]
    used_fallback: bool = False
    latency_ms: float = 0.0


class AudioTurnPipeline:
    def __init__(
        self,
        config: AudioConfig,
        tts: Optional[TTSComponent] = None,
        *,
        recording_dirs: Optional[Iterable[str]] = None,
        text_normalizer: Optional[Callable[[str], str]] = None,
        speech_speed: float = 1.0,
    ):
        self.config = config
        self.tts = tts
        self.speech_speed = speech_speed
        self.recording_dirs: List[str] = list(recording_dirs or [config.agi_recordings_dir])
        self._normalize = text_normalizer or (lambda text: text)
        self._sequence = itertools.count(1)
        self._sweep_task: Optional[asyncio.Task] = None

    @staticmethod
    def _slug(value: str) -> str:
        return _SAFE_NAME.sub("", value or "")[-24:] or "call"

    def asset_name(self, kind: str, call_ref: str) -> str:
        return f"{kind}_{self._slug(call_ref)}_{next(self._sequence)}_{int(time.time() * 1000)}"

    # ------------------------------------------------------------------
    # Caller audio
    # ------------------------------------------------------------------
    async def record_caller_turn(
        self,
        leg: MediaLeg,
        max_duration: Optional[float] = None,
        silence_threshold: Optional[float] = None,
    ) -> Optional[str]:
        """Record until silence, the duration cap or the terminator digit.

        Returns the recording path, or None if nothing was captured.
        """
        max_duration = max_duration or self.config.record_max_duration_sec
        silence_threshold = silence_threshold or self.config.record_max_silence_sec
        name = self.asset_name("turn", leg.channel_id)
        path = await leg.record(name, max_duration, silence_threshold)
        if is_empty_recording(path):
            logger.info("No caller audio captured", channel_id=leg.channel_id, name=name)
            return None
        return path

    async def has_voice_activity(self, path: str) -> bool:
        """Cheap RMS check; inconclusive measurements count as voice."""
        rms = await asyncio.get_running_loop().run_in_executor(None, wav_rms, path)
        if rms is None:
            logger.debug("Voice activity inconclusive; assuming speech", path=path)
            return True
        return rms > self.config.vad_rms_threshold

    async def enhance_for_transcription(self, path: str) -> str:
        """Band-limit, normalize and trim a recording with sox.

        Returns the enhanced file, or `path` unchanged when sox is missing,
        fails or produces nothing.
        """
        if not self.config.enhance_enabled:
            return path
        root, _ = os.path.splitext(path)
        out = f"{root}_enhanced.wav"
        args = [
            self.config.sox_binary, path, out,
            "rate", str(self.config.transcription_sample_rate),
            "channels", "1",
            "highpass", str(self.config.highpass_hz),
            "lowpass", str(self.config.lowpass_hz),
            "norm", str(self.config.normalize_db),
        ]
        if self.config.trim_silence:
            args += ["silence", "1", "0.1", "1%", "reverse", "silence", "1", "0.1", "1%", "reverse"]

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("sox unavailable; using original recording", error=str(exc))
            return path

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self.config.sox_timeout_sec)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.warning("sox timed out; using original recording", path=path)
            return path

        if proc.returncode != 0 or is_empty_recording(out):
            logger.warning(
                "Audio enhancement failed; using original recording",
                path=path,
                returncode=proc.returncode,
                stderr=(stderr or b"").decode("utf-8", errors="ignore")[:200],
            )
            return path
        return out

    # ------------------------------------------------------------------
    # Bot audio
    # ------------------------------------------------------------------
    def _stage(self, pcm: bytes, sample_rate: int, name: str) -> str:
        os.makedirs(self.config.sounds_dir, exist_ok=True)
        converted, _ = resample_audio(pcm, sample_rate, self.config.playback_sample_rate)
        path = os.path.join(self.config.sounds_dir, f"{name}.wav")
        pcm16_to_wav_file(path, converted, self.config.playback_sample_rate)
        os.chmod(path, 0o644)
        return path

    def asset_path(self, asset: str) -> str:
        """Filesystem path of a staged asset id such as 'custom/tts_x'."""
        return os.path.join(self.config.sounds_dir, f"{asset.rsplit('/', 1)[-1]}.wav")

    async def render_speech(self, text: str, name: str, call_id: str = "prerender") -> Optional[str]:
        """Synthesize `text` and stage it as `<sound_prefix>/<name>`; None on any failure."""
        if self.tts is None or not (text or "").strip():
            return None
        started = time.perf_counter()
        try:
            audio = await self.tts.synthesize(call_id, self._normalize(text))
        except Exception as exc:
            logger.warning("Speech synthesis failed", call_id=call_id, error=str(exc))
            return None
        try:
            await asyncio.get_running_loop().run_in_executor(None, self._stage, audio.pcm, audio.sample_rate, name)
        except Exception as exc:
            logger.warning("Failed to stage synthesized audio", call_id=call_id, name=name, error=str(exc))
            return None
        _SYNTH_LATENCY.observe(time.perf_counter() - started)
        return f"{self.config.sound_prefix}/{name}"

    def _playback_timeout(self, asset: str, text: Optional[str] = None) -> float:
        """Staged length plus slack; unreadable assets fall back to the text's spoken estimate."""
        try:
            return wav_duration(self.asset_path(asset)) + 5.0
        except (OSError, EOFError, ValueError, wave.Error):
            if text:
                return estimate_speech_seconds(text, self.speech_speed) + 5.0
            return self.config.playback_timeout_sec

    async def play_asset(self, leg: MediaLeg, asset: str) -> PlaybackResult:
        """Play an already staged asset, falling back to the fallback prompt."""
        started = time.perf_counter()
        if await leg.play(asset, timeout=self._playback_timeout(asset)):
            return PlaybackResult(True, asset, latency_ms=(time.perf_counter() - started) * 1000.0)
        return await self._play_fallback(leg, started)

    async def synthesize_and_play(self, leg: MediaLeg, text: str, call_id: str) -> PlaybackResult:
        started = time.perf_counter()
        asset = await self.render_speech(text, self.asset_name("tts", call_id), call_id=call_id)
        if asset and await leg.play(asset, timeout=self._playback_timeout(asset, text)):
            return PlaybackResult(True, asset, latency_ms=(time.perf_counter() - started) * 1000.0)
        logger.warning("Primary playback failed; playing fallback prompt", call_id=call_id, asset=asset)
        return await self._play_fallback(leg, started)

    async def _play_fallback(self, leg: MediaLeg, started: float) -> PlaybackResult:
        _FALLBACK_PROMPTS.inc()
        played = await leg.play(self.config.fallback_prompt, timeout=self.config.playback_timeout_sec)
        if not played:
            logger.error("Fallback prompt failed", channel_id=leg.channel_id)
        return PlaybackResult(False, self.config.fallback_prompt, used_fallback=True, latency_ms=(time.perf_counter() - started) * 1000.0)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def purge_stale_files(self, now: Optional[float] = None) -> int:
        """Delete pipeline-created audio older than the retention window."""
        cutoff = (now or time.time()) - self.config.retention_hours * 3600.0
        removed = 0
        for directory in [*self.recording_dirs, self.config.sounds_dir]:
            try:
                entries = list(os.scandir(directory))
            except OSError:
                continue
            for entry in entries:
                if not entry.is_file() or not entry.name.startswith(PURGEABLE_PREFIXES):
                    continue
                try:
                    if entry.stat().st_mtime < cutoff:
                        os.remove(entry.path)
                        removed += 1
                except OSError as exc:
                    logger.debug("Could not purge audio file", path=entry.path, error=str(exc))
        return removed

    async def run_retention_sweep(self) -> None:
        """Purge stale audio now and then every `sweep_interval_sec`, off the event loop."""
        loop = asyncio.get_running_loop()
        while True:
            removed = await loop.run_in_executor(None, self.purge_stale_files)
            if removed:
                logger.info("Purged stale audio files", removed=removed)
            await asyncio.sleep(self.config.sweep_interval_sec)

    def start_retention_sweep(self) -> asyncio.Task:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self.run_retention_sweep())
        return self._sweep_task

    async def stop_retention_sweep(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
