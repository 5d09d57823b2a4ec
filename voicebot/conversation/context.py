"""Per-call conversation context: rolling message history plus the contact's talking points."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)

_POINT_LABELS = {
    "name": "Cliente",
    "location": "Ubicación",
    "size": "Tamaño",
    "price": "Precio",
    "extra_info": "Información adicional",
    "advantages": "Ventajas",
}


@dataclass
class ConversationContext:
    call_id: str
    talking_points: Dict[str, Any]
    history: Deque[Dict[str, str]] = field(default_factory=deque)


class ConversationContextStore:
    def __init__(self, history_limit: int = 10):
        self.history_limit = history_limit
        self._contexts: Dict[str, ConversationContext] = {}

    def open(self, call_id: str, talking_points: Optional[Dict[str, Any]] = None) -> ConversationContext:
        context = ConversationContext(
            call_id=call_id,
            talking_points=dict(talking_points or {}),
            history=deque(maxlen=self.history_limit),
        )
        self._contexts[call_id] = context
        return context

    def get(self, call_id: str) -> Optional[ConversationContext]:
        return self._contexts.get(call_id)

    def append(self, call_id: str, role: str, content: str) -> None:
        context = self._contexts.get(call_id)
        if context is None:
            logger.debug("Message for closed context dropped", call_id=call_id, role=role)
            return
        context.history.append({"role": role, "content": content})

    def history(self, call_id: str) -> List[Dict[str, str]]:
        context = self._contexts.get(call_id)
        return list(context.history) if context else []

    def build_messages(self, call_id: str, system_prompt: str) -> List[Dict[str, str]]:
        """System instructions, then the talking points, then the rolling history."""
        messages = [{"role": "system", "content": system_prompt}]
        context = self._contexts.get(call_id)
        if context is None:
            return messages
        points = [
            f"- {_POINT_LABELS.get(key, key)}: {value}"
            for key, value in context.talking_points.items()
            if value
        ]
        if points:
            messages.append({"role": "system", "content": "Datos de la propiedad:\n" + "\n".join(points)})
        messages.extend(context.history)
        return messages

    def clear(self, call_id: str) -> None:
        self._contexts.pop(call_id, None)

    @property
    def active_count(self) -> int:
        return len(self._contexts)
