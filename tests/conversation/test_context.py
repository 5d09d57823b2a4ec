"""Per-call conversation context."""

from voicebot.conversation.context import ConversationContextStore


class TestConversationContextStore:
    def test_history_is_bounded(self):
        store = ConversationContextStore(history_limit=3)
        store.open("call-1")

        for i in range(5):
            store.append("call-1", "user", f"m{i}")

        assert [m["content"] for m in store.history("call-1")] == ["m2", "m3", "m4"]

    def test_messages_include_talking_points(self):
        store = ConversationContextStore()
        store.open("call-1", {"name": "Juan", "location": "Querétaro", "price": None, "parking": "20 cajones"})
        store.append("call-1", "assistant", "Hola Juan")

        messages = store.build_messages("call-1", "Eres Sofía.")

        assert messages[0] == {"role": "system", "content": "Eres Sofía."}
        assert messages[1]["content"] == "Datos de la propiedad:\n- Cliente: Juan\n- Ubicación: Querétaro\n- parking: 20 cajones"
        assert messages[2] == {"role": "assistant", "content": "Hola Juan"}

    def test_closed_context(self):
        store = ConversationContextStore()
        store.open("call-1")
        store.clear("call-1")

        store.append("call-1", "user", "¿sigues ahí?")

        assert store.get("call-1") is None
        assert store.history("call-1") == []
        assert store.build_messages("call-1", "prompt") == [{"role": "system", "content": "prompt"}]
        assert store.active_count == 0

    def test_contexts_are_isolated(self):
        store = ConversationContextStore()
        store.open("a")
        store.open("b")
        store.append("a", "user", "solo a")

        assert store.history("b") == []
        assert store.active_count == 2
