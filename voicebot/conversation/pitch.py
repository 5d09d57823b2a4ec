"""Spoken-text helpers: TTS normalization, the property pitch and canned quick replies."""

import asyncio
import re
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.models import Contact
from ..logging_config import get_logger
from .dates import fold

logger = get_logger(__name__)

_SQUARE_METERS = re.compile(r"(\d[\d,.]*)\s*(?:m2|m²|mts2|mt2)\b", re.IGNORECASE)
_CURRENCY = re.compile(r"\$\s*(\d[\d,.]*)")
_DIGITS = re.compile(r"\d+")


def normalize_for_speech(text: str) -> str:
    """Rewrite units and currency the way a person would say them."""
    text = _SQUARE_METERS.sub(lambda m: f"{m.group(1)} metros cuadrados", text or "")
    text = _CURRENCY.sub(lambda m: f"{m.group(1)} pesos", text)
    text = text.replace("m²", "metros cuadrados")
    return re.sub(r"\s+", " ", text).strip()


def _to_int(value) -> Optional[int]:
    if value is None:
        return None
    digits = "".join(_DIGITS.findall(str(value).split(".")[0]))
    return int(digits) if digits else None


def format_price(value) -> str:
    """3500000 -> '3 millones 500 mil pesos'."""
    amount = _to_int(value)
    if amount is None:
        return str(value or "")
    millions, remainder = divmod(amount, 1_000_000)
    thousands, units = divmod(remainder, 1_000)
    parts = []
    if millions:
        parts.append("1 millón" if millions == 1 else f"{millions} millones")
    if thousands:
        parts.append(f"{thousands} mil")
    if units or not parts:
        parts.append(str(units))
    suffix = " de pesos" if millions and not thousands and not units else " pesos"
    return " ".join(parts) + suffix


def format_size(value) -> str:
    amount = _to_int(value)
    if amount is None:
        return str(value or "")
    return f"{amount} metros cuadrados"


def build_pitch(contact: Contact) -> str:
    sentences = []
    details = []
    if contact.location:
        details.append(f"está en {contact.location}")
    if contact.size:
        details.append(f"tiene {format_size(contact.size)}")
    if contact.price:
        details.append(f"su precio es de {format_price(contact.price)}")
    if details:
        head = ", ".join(details[:-1])
        sentences.append("La nave " + (f"{head} y {details[-1]}" if head else details[-1]) + ".")
    if contact.advantages:
        sentences.append(f"Además, {contact.advantages.rstrip('.')}.")
    if contact.extra_info:
        sentences.append(contact.extra_info.rstrip(".") + ".")
    sentences.append("¿Te gustaría agendar una visita para conocerla?")
    return " ".join(sentences)


DEFAULT_QUICK_REPLIES: Dict[str, str] = {
    "busy": "Entiendo, no te quito más tiempo. Gracias por tu tiempo, que tengas buen día.",
    "not_interested": "Entiendo perfectamente. Gracias por tu tiempo, que tengas buen día.",
    "call_later": "Claro, con gusto te marco en otro momento. Gracias por tu tiempo, hasta luego.",
    "ask_day": "¡Excelente! ¿Qué día y a qué hora te queda mejor para la visita?",
    "who_is_calling": "Te llamo de {company}, nos dedicamos a la renta y venta de naves industriales.",
}

# First match wins
QUICK_REPLY_RULES: List[Tuple[str, re.Pattern]] = [
    ("not_interested", re.compile(r"\b(no me interesa|no estoy interesad[oa]|no gracias|no, gracias)\b")),
    ("busy", re.compile(r"\b(estoy ocupad[oa]|no tengo tiempo|estoy manejando|ando ocupad[oa])\b")),
    ("call_later", re.compile(r"\b(llamame (mas tarde|despues|luego)|marcame (mas tarde|despues|luego)|en otro momento)\b")),
    ("who_is_calling", re.compile(r"\b(quien habla|de donde (me )?(llamas|hablas)|de parte de quien)\b")),
    ("ask_day", re.compile(r"\b(quiero (ir a )?verla|me gustaria (ir a )?verla|cuando (puedo|podria) ir|agendar)\b")),
]


class QuickReplyCatalog:
    """Canned replies pre-rendered at startup so they play without a generation round trip."""

    def __init__(self, replies: Optional[Dict[str, str]] = None, **placeholders: str):
        merged = dict(DEFAULT_QUICK_REPLIES)
        merged.update(replies or {})
        self._texts = {key: text.format(**placeholders) if placeholders else text for key, text in merged.items()}
        self._assets: Dict[str, str] = {}

    def match(self, text: str) -> Optional[str]:
        folded = fold(text)
        for key, pattern in QUICK_REPLY_RULES:
            if key in self._texts and pattern.search(folded):
                return key
        return None

    def text_for(self, key: str) -> str:
        return self._texts[key]

    def asset_for(self, key: str) -> Optional[str]:
        return self._assets.get(key)

    @property
    def ready(self) -> List[str]:
        return sorted(self._assets)

    async def prepare(self, render: Callable[[str, str], Awaitable[Optional[str]]]) -> int:
        """Render every reply with `render(text, name)`; returns how many are playable."""
        keys = list(self._texts)
        results = await asyncio.gather(
            *(render(self._texts[key], f"quick_{key}") for key in keys),
            return_exceptions=True,
        )
        for key, result in zip(keys, results):
            if isinstance(result, str):
                self._assets[key] = result
            elif isinstance(result, Exception):
                logger.warning("Quick reply pre-render failed", key=key, error=str(result))
        logger.info("Quick replies prepared", ready=len(self._assets), total=len(keys))
        return len(self._assets)
