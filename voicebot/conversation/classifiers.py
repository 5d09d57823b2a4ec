"""
Pluggable classifiers used by the conversation engine.

- closing detection on the bot's own replies
- first-response sentiment (fast path right after the greeting)
- post-call intent analysis (heuristic, model-based, or both merged)
- the appointment creation policy applied to the analysis
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from typing import Callable, Iterable, List, Optional, Sequence

from ..config import AnalysisConfig
from ..core.models import ConversationTurn, Speaker
from ..logging_config import get_logger
from ..pipelines.base import LLMComponent
from .dates import fold, parse_relative_date, parse_relative_time

logger = get_logger(__name__)


# ----------------------------------------------------------------------
# Closing detection
# ----------------------------------------------------------------------
class ClosingClassifier(ABC):
    @abstractmethod
    def is_closing(self, text: str) -> bool: ...


class PhraseClosingClassifier(ClosingClassifier):
    def __init__(self, phrases: Iterable[str]):
        self.phrases = [fold(p) for p in phrases if p]

    def is_closing(self, text: str) -> bool:
        folded = fold(text)
        return any(phrase in folded for phrase in self.phrases)


_NEGATIVE_FIRST = re.compile(
    r"\b(no me interesa|no estoy interesad[oa]|no gracias|no, gracias|no tengo tiempo|estoy ocupad[oa]|ahorita no|equivocado)\b"
)
_POSITIVE_FIRST = re.compile(
    r"\b(si|claro|adelante|digame|dime|cuentame|ok|okay|bueno|perfecto|me interesa|por supuesto|a ver)\b"
)


def first_response_sentiment(text: str) -> Optional[str]:
    """'positive', 'negative' or None for the caller's first answer to the greeting."""
    folded = fold(text)
    if _NEGATIVE_FIRST.search(folded):
        return "negative"
    if _POSITIVE_FIRST.search(folded):
        return "positive"
    return None


# ----------------------------------------------------------------------
# Intent analysis
# ----------------------------------------------------------------------
@dataclass
class IntentAnalysis:
    interest: bool = False
    agreement: bool = False
    interest_level: str = "low"
    wants_appointment: bool = False
    appointment_date: Optional[date] = None
    appointment_time: Optional[time] = None
    client_response: str = ""
    notes: str = ""

    def scheduled_at(self) -> Optional[datetime]:
        if self.appointment_date and self.appointment_time:
            return datetime.combine(self.appointment_date, self.appointment_time)
        return None


class IntentAnalyzer(ABC):
    @abstractmethod
    async def analyze(self, turns: Sequence[ConversationTurn]) -> IntentAnalysis: ...


def _client_text(turns: Sequence[ConversationTurn]) -> str:
    return " ".join(t.text for t in turns if t.speaker == Speaker.CLIENT and t.text)


def _transcript(turns: Sequence[ConversationTurn]) -> str:
    labels = {Speaker.BOT: "Asesor", Speaker.CLIENT: "Cliente"}
    return "\n".join(f"{labels[t.speaker]}: {t.text}" for t in turns if t.text)


_INTEREST = re.compile(
    r"\b(me interesa|interesante|cuanto cuesta|precio|me gustaria|quiero (ver|conocer|ir)|mas informacion|"
    r"informes|suena bien|me late|que tamano|donde esta)\b"
)
_AGREEMENT = re.compile(
    r"\b(de acuerdo|esta bien|me parece( bien)?|perfecto|orale|va|sale|si,? (claro|por favor)|ahi nos vemos|nos vemos)\b"
)
_APPOINTMENT = re.compile(r"\b(cita|visita|visitarla|agendar|agenda|ir a verla|conocerla|recorrido|pasar a verla)\b")
_DISINTEREST = re.compile(
    r"\b(no me interesa|no estoy interesad[oa]|no gracias|no, gracias|no vuelvas a llamar|quitame de (la|tu) lista|no necesito)\b"
)


class HeuristicIntentAnalyzer(IntentAnalyzer):
    """Spanish keyword analysis; dates and times are taken from the whole transcript."""

    def __init__(self, today: Callable[[], date] = date.today):
        self._today = today

    async def analyze(self, turns: Sequence[ConversationTurn]) -> IntentAnalysis:
        return self.analyze_sync(turns)

    def analyze_sync(self, turns: Sequence[ConversationTurn]) -> IntentAnalysis:
        client = fold(_client_text(turns))
        full = " ".join(t.text for t in turns if t.text)
        if not client:
            return IntentAnalysis(notes="sin respuesta del cliente")

        disinterest = bool(_DISINTEREST.search(client))
        interest = bool(_INTEREST.search(client)) and not disinterest
        agreement = bool(_AGREEMENT.search(client)) and not disinterest
        wants_appointment = bool(_APPOINTMENT.search(client)) and not disinterest

        if disinterest:
            level = "low"
        elif interest and (agreement or wants_appointment):
            level = "high"
        elif interest or wants_appointment:
            level = "medium"
        else:
            level = "low"

        client_turns: List[str] = [t.text for t in turns if t.speaker == Speaker.CLIENT and t.text]
        return IntentAnalysis(
            interest=interest or wants_appointment,
            agreement=agreement,
            interest_level=level,
            wants_appointment=wants_appointment,
            appointment_date=parse_relative_date(full, self._today()),
            appointment_time=parse_relative_time(full),
            client_response=client_turns[-1] if client_turns else "",
        )


ANALYSIS_INSTRUCTIONS = (
    "Analiza la siguiente llamada de ventas de naves industriales. Hoy es {today} ({weekday}). "
    "Responde solo con un objeto JSON con las claves: interest (bool), agreement (bool), "
    "interest_level ('high'|'medium'|'low'), wants_appointment (bool), "
    "appointment_date ('YYYY-MM-DD' o null), appointment_time ('HH:MM' o null), "
    "client_response (resumen breve de la postura del cliente), notes (texto breve)."
)
_WEEKDAY_NAMES = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]


def _parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "si", "sí", "1")
    return bool(value)


def analysis_from_json(data: dict) -> IntentAnalysis:
    """Build an IntentAnalysis from the model's JSON; bad dates/times become None."""
    appointment_date = appointment_time = None
    if data.get("appointment_date"):
        try:
            appointment_date = date.fromisoformat(str(data["appointment_date"]))
        except ValueError:
            pass
    if data.get("appointment_time"):
        try:
            appointment_time = time.fromisoformat(str(data["appointment_time"]))
        except ValueError:
            pass
    level = str(data.get("interest_level") or "low").lower()
    return IntentAnalysis(
        interest=_parse_bool(data.get("interest")),
        agreement=_parse_bool(data.get("agreement")),
        interest_level=level if level in ("high", "medium", "low") else "low",
        wants_appointment=_parse_bool(data.get("wants_appointment")),
        appointment_date=appointment_date,
        appointment_time=appointment_time,
        client_response=str(data.get("client_response") or ""),
        notes=str(data.get("notes") or ""),
    )


def merge_analysis(heuristic: IntentAnalysis, model: IntentAnalysis) -> IntentAnalysis:
    merged = replace(model)
    if heuristic.wants_appointment:
        merged.wants_appointment = True
    if merged.appointment_date is None:
        merged.appointment_date = heuristic.appointment_date
    if merged.appointment_time is None:
        merged.appointment_time = heuristic.appointment_time
    if merged.appointment_date and merged.appointment_time and merged.interest:
        merged.agreement = True
    if not merged.client_response:
        merged.client_response = heuristic.client_response
    return merged


class LLMIntentAnalyzer(IntentAnalyzer):
    """Asks the text-generation adapter for a JSON verdict and merges it with the heuristic one."""

    def __init__(
        self,
        llm: LLMComponent,
        *,
        model: Optional[str] = None,
        timeout_sec: float = 15.0,
        fallback: Optional[HeuristicIntentAnalyzer] = None,
        today: Callable[[], date] = date.today,
    ):
        self.llm = llm
        self.model = model
        self.timeout_sec = timeout_sec
        self.fallback = fallback or HeuristicIntentAnalyzer(today)
        self._today = today

    async def analyze(self, turns: Sequence[ConversationTurn]) -> IntentAnalysis:
        heuristic = self.fallback.analyze_sync(turns)
        if not _client_text(turns):
            return heuristic
        today = self._today()
        messages = [
            {"role": "system", "content": ANALYSIS_INSTRUCTIONS.format(today=today.isoformat(), weekday=_WEEKDAY_NAMES[today.weekday()])},
            {"role": "user", "content": _transcript(turns)},
        ]
        options = {"response_format": "json_object", "temperature": 0.2, "max_tokens": 300}
        if self.model:
            options["model"] = self.model
        try:
            response = await asyncio.wait_for(self.llm.generate("analysis", messages, options), self.timeout_sec)
            data = json.loads(response.text)
            if not isinstance(data, dict):
                raise ValueError("analysis is not a JSON object")
        except Exception as exc:
            logger.warning("Model intent analysis failed; using heuristic result", error=str(exc))
            return heuristic
        return merge_analysis(heuristic, analysis_from_json(data))


# ----------------------------------------------------------------------
# Appointment policy
# ----------------------------------------------------------------------
@dataclass
class AppointmentPolicy:
    """Which analysis signals create an appointment. Each rule is independently switchable."""
    on_appointment_intent: bool = True
    on_agreement: bool = True
    on_high_interest: bool = True
    on_date_and_time: bool = True

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> "AppointmentPolicy":
        return cls(
            on_appointment_intent=config.create_on_appointment_intent,
            on_agreement=config.create_on_agreement,
            on_high_interest=config.create_on_high_interest,
            on_date_and_time=config.create_on_date_and_time,
        )

    def should_create(self, analysis: IntentAnalysis) -> bool:
        return (
            (self.on_appointment_intent and analysis.wants_appointment)
            or (self.on_agreement and analysis.agreement)
            or (self.on_high_interest and analysis.interest and analysis.interest_level == "high")
            or (self.on_date_and_time and analysis.scheduled_at() is not None)
        )
