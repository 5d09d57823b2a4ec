"""Contracts for the speech-to-text, text-generation and text-to-speech adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ProviderError(RuntimeError):
    """An adapter call failed (transport error, non-2xx status or bad payload)."""


@dataclass
class Transcript:
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None
    confidence: Optional[float] = None


@dataclass
class LLMResponse:
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SynthesizedAudio:
    """Signed 16-bit little-endian mono PCM."""
    pcm: bytes
    sample_rate: int


class Component(ABC):
    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class STTComponent(Component):
    @abstractmethod
    async def transcribe_file(self, call_id: str, path: str, options: Optional[Dict[str, Any]] = None) -> Transcript: ...


class LLMComponent(Component):
    @abstractmethod
    async def generate(
        self,
        call_id: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse: ...


class TTSComponent(Component):
    @abstractmethod
    async def synthesize(self, call_id: str, text: str, options: Optional[Dict[str, Any]] = None) -> SynthesizedAudio: ...
