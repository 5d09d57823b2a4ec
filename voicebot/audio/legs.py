"""Media legs: where a conversation plays prompts and records the caller.

`BridgeLeg` drives an ARI mixing bridge; `AGILeg` drives a FastAGI session.
The conversation engine and audio pipeline only see `MediaLeg`.
"""

import os
from abc import ABC, abstractmethod
from typing import Optional

from ..agi.session import AGIError, AGISession, AGISessionClosed, AGITimeout
from ..logging_config import get_logger

logger = get_logger(__name__)


class MediaLeg(ABC):
    channel_id: str

    @abstractmethod
    async def play(self, asset: str, timeout: Optional[float] = None) -> bool:
        """Play a sound asset (e.g. 'custom/tts_x'); True once playback completed."""

    @abstractmethod
    async def record(self, name: str, max_duration: float, max_silence: float) -> Optional[str]:
        """Record the caller; returns the audio path or None."""

    @abstractmethod
    async def hangup(self) -> None:
        """Hang up; never raises."""

    @property
    @abstractmethod
    def hung_up(self) -> bool: ...


class BridgeLeg(MediaLeg):
    def __init__(self, ari, channel_id: str, bridge_id: str):
        self.ari = ari
        self.channel_id = channel_id
        self.bridge_id = bridge_id

    async def play(self, asset: str, timeout: Optional[float] = None) -> bool:
        return await self.ari.play_audio(self.bridge_id, asset, timeout=timeout)

    async def record(self, name: str, max_duration: float, max_silence: float) -> Optional[str]:
        return await self.ari.record_audio(self.bridge_id, name, max_duration, max_silence)

    async def hangup(self) -> None:
        await self.ari.hangup(self.channel_id)

    @property
    def hung_up(self) -> bool:
        return self.ari.is_channel_gone(self.channel_id)


class AGILeg(MediaLeg):
    def __init__(self, session: AGISession, recordings_dir: str, terminator: str = "#"):
        self.session = session
        self.channel_id = session.channel or session.uniqueid or "agi"
        self.recordings_dir = recordings_dir
        self.terminator = terminator

    async def play(self, asset: str, timeout: Optional[float] = None) -> bool:
        try:
            response = await self.session.stream_file(asset, timeout=timeout)
        except (AGIError, AGISessionClosed, AGITimeout) as exc:
            logger.warning("AGI playback failed", channel=self.channel_id, asset=asset, error=str(exc))
            return False
        # STREAM FILE: -1 on hangup/error, 0 when played to the end, else the escape digit
        return response.result is not None and response.result >= 0

    async def record(self, name: str, max_duration: float, max_silence: float) -> Optional[str]:
        os.makedirs(self.recordings_dir, exist_ok=True)
        base = os.path.join(self.recordings_dir, name)
        try:
            response = await self.session.record_file(
                base,
                "wav",
                escape_digits=self.terminator,
                timeout_ms=int(max_duration * 1000),
                silence_sec=max_silence,
            )
        except (AGIError, AGISessionClosed, AGITimeout) as exc:
            logger.warning("AGI recording failed", channel=self.channel_id, error=str(exc))
            return None
        if response.result is None or response.result < 0:
            return None
        return f"{base}.wav"

    async def hangup(self) -> None:
        await self.session.hangup()

    @property
    def hung_up(self) -> bool:
        return self.session.hung_up or self.session.ended
