"""PCM helpers: resampling, WAV staging and cheap measurements."""

import audioop
import math
import os
import wave
from typing import Optional, Tuple

WAV_HEADER_BYTES = 44


def resample_audio(
    pcm_bytes: bytes,
    source_rate: int,
    target_rate: int,
    *,
    sample_width: int = 2,
    channels: int = 1,
    state=None,
) -> Tuple[bytes, object]:
    """Resample linear PCM; returns (audio, ratecv state) for streaming use."""
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes, state
    converted, new_state = audioop.ratecv(pcm_bytes, sample_width, channels, source_rate, target_rate, state)
    return converted, new_state


def pcm16_to_wav_file(path: str, pcm_bytes: bytes, sample_rate: int, channels: int = 1) -> str:
    with wave.open(path, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes)
    return path


def wav_duration(path: str) -> float:
    with wave.open(path, "rb") as wf:
        rate = wf.getframerate()
        return wf.getnframes() / float(rate) if rate else 0.0


def wav_rms(path: str) -> Optional[float]:
    """RMS as a fraction of full scale, or None when it cannot be measured."""
    try:
        with wave.open(path, "rb") as wf:
            width = wf.getsampwidth()
            frames = wf.readframes(wf.getnframes())
    except (OSError, EOFError, wave.Error):
        return None
    if not frames or width not in (1, 2, 3, 4):
        return None
    try:
        rms = audioop.rms(frames, width)
    except audioop.error:
        return None
    value = rms / float(1 << (8 * width - 1))
    return None if math.isnan(value) else value


def is_empty_recording(path: Optional[str]) -> bool:
    """True when nothing beyond a WAV header was captured."""
    if not path:
        return True
    try:
        return os.path.getsize(path) <= WAV_HEADER_BYTES
    except OSError:
        return True


def estimate_speech_seconds(text: str, speed: float = 1.0, words_per_minute: float = 150.0) -> float:
    """Rough spoken duration of `text` at a conversational pace."""
    words = len((text or "").split())
    if not words:
        return 0.0
    return (words / words_per_minute) * 60.0 / max(speed, 0.1)
