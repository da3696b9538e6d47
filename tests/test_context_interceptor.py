"""
Tests for prompt context rewriting in app/context_interceptor.py
"""

import copy
import os
import re
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.context_interceptor import ContextInterceptor, INJECTION_NAME
from app.database import db_save_summary
from app.query_system import AdvancedQuerySystem
from app.summarizer import group_hash
from app.vector_store import VectorStore

ARCHIVE = [
    {"id": 1, "role": "assistant", "content": "The dragon burned the village", "timestamp": 1000.0},
    {"id": 2, "role": "user", "content": "Elara bought bread at the market", "timestamp": 2000.0},
]


def _chat():
    return [
        {"role": "system", "content": "You narrate a fantasy adventure."},
        {"role": "user", "content": "We leave the inn at dawn."},
        {"role": "assistant", "content": "The road north is muddy."},
        {"role": "user", "content": "We reach the bridge."},
        {"role": "assistant", "content": "A troll blocks the bridge."},
        {"role": "user", "content": "I offer the troll a coin."},
    ]


@pytest.fixture
def interceptor(temp_db, config, fake_embeddings):
    config["summarization"]["running_memory_size"] = 2
    store = VectorStore(fake_embeddings, config=config)
    query_system = AdvancedQuerySystem(store, fake_embeddings, config=config)
    return ContextInterceptor(query_system, store, config=config)


def _save_summary(index, text, covers, messages=None):
    messages = messages or _chat()
    db_save_summary("chat1", index, {
        "text": text,
        "message_hash": group_hash([messages[i] for i in covers]),
        "metadata": {"covers": covers},
    })


def _summarize_opening():
    _save_summary(2, "The party set out north.", [1, 2])
    _save_summary(3, "They reached a bridge.", [3])


class TestPlanWindow:
    """Tests for choosing which messages a summary replaces."""

    def test_only_spans_outside_window(self, interceptor):
        _summarize_opening()
        _save_summary(4, "A troll appeared.", [3, 4])

        hidden, texts = interceptor.plan_window(_chat(), "chat1")

        assert hidden == {1, 2, 3}
        assert texts == ["The party set out north.", "They reached a bridge."]

    def test_summary_without_covers_uses_its_index(self, interceptor):
        db_save_summary("chat1", 1, {"text": "They left the inn.", "message_hash": group_hash([_chat()[1]])})
        hidden, _ = interceptor.plan_window(_chat(), "chat1")
        assert hidden == {1}

    def test_edited_message_stays_visible(self, interceptor):
        """A summary no longer matching the messages it covers hides nothing."""
        _summarize_opening()
        messages = _chat()
        messages[1]["content"] = "Kael betrayed Elara at the inn."

        hidden, texts = interceptor.plan_window(messages, "chat1")

        assert hidden == {3}
        assert texts == ["They reached a bridge."]

    def test_shifted_messages_stay_visible(self, interceptor):
        """Deleting a message moves later ones under summaries written for others."""
        _summarize_opening()
        messages = _chat()
        del messages[1]

        hidden, _ = interceptor.plan_window(messages, "chat1")

        assert hidden == set()

    def test_summary_without_hash_hides_nothing(self, interceptor):
        db_save_summary("chat1", 2, {"text": "The party set out north.", "metadata": {"covers": [1, 2]}})
        hidden, _ = interceptor.plan_window(_chat(), "chat1")
        assert hidden == set()

    def test_short_chat_hides_nothing(self, interceptor):
        _summarize_opening()
        hidden, texts = interceptor.plan_window(_chat()[:2], "chat1")
        assert hidden == set()
        assert texts == []


class TestInterceptMessages:
    """Tests for the rewritten message list."""

    @pytest.mark.asyncio
    async def test_summaries_replace_hidden_messages(self, interceptor):
        _summarize_opening()
        messages = _chat()
        original = copy.deepcopy(messages)

        result = await interceptor.intercept_messages(messages, "chat1")

        assert messages == original
        assert result["hidden_count"] == 3
        out = result["messages"]
        assert [m["content"] for m in (out[0], out[-2], out[-1])] == [
            "You narrate a fantasy adventure.", "A troll blocks the bridge.", "I offer the troll a coin."
        ]
        assert out[1]["role"] == "system"
        assert out[1]["name"] == INJECTION_NAME
        assert out[1]["content"] == (
            "[Summary of 2 earlier events]:\n- The party set out north.\n- They reached a bridge."
        )

    @pytest.mark.asyncio
    async def test_hidden_messages_are_archived(self, interceptor):
        _summarize_opening()

        result = await interceptor.intercept_messages(_chat(), "chat1", character="Elara")

        assert result["archived"] == 3
        archived = interceptor.vector_store.get_vectors_for_chat("chat1")
        assert {v["content"] for v in archived} == {
            "We leave the inn at dawn.", "The road north is muddy.", "We reach the bridge."
        }
        assert all(v["metadata"]["character"] == "Elara" for v in archived)

    @pytest.mark.asyncio
    async def test_relevant_memories_are_injected(self, interceptor):
        interceptor.vector_store.process_messages(ARCHIVE, "chat1")
        messages = [
            {"role": "system", "content": "You narrate a fantasy adventure."},
            {"role": "user", "content": "Tell me about the dragon village"},
        ]

        result = await interceptor.intercept_messages(messages, "chat1")

        assert result["injected_memories"] >= 1
        injection = result["messages"][1]
        assert injection["name"] == INJECTION_NAME
        lines = injection["content"].split("\n")
        assert lines[0] == "[Lorekeeper found relevant past messages to consider]:"
        assert re.match(r"- A past memory \(relevance: \d+%\): The dragon burned the village$", lines[1])
        assert result["messages"][2] == messages[1]

    @pytest.mark.asyncio
    async def test_summary_block_precedes_memories(self, interceptor):
        interceptor.vector_store.process_messages(ARCHIVE, "chat1")
        _summarize_opening()
        messages = _chat()
        messages[-1]["content"] = "The troll mentions a dragon village."

        result = await interceptor.intercept_messages(messages, "chat1")

        out = result["messages"]
        assert out[1]["content"].startswith("[Summary of 2 earlier events]")
        assert out[2]["content"].startswith("[Lorekeeper found relevant past messages")
        assert len(out) == 3 + 2

    @pytest.mark.asyncio
    async def test_edited_message_is_kept(self, interceptor):
        _summarize_opening()
        messages = _chat()
        messages[1]["content"] = "Kael betrayed Elara at the inn."

        result = await interceptor.intercept_messages(messages, "chat1")

        contents = [m["content"] for m in result["messages"]]
        assert result["hidden_count"] == 1
        assert "Kael betrayed Elara at the inn." in contents
        assert "The road north is muddy." in contents
        assert "[Summary of 1 earlier events]:\n- They reached a bridge." in contents

    @pytest.mark.asyncio
    async def test_summary_block_leads_when_opening_is_hidden(self, interceptor):
        _save_summary(0, "The narrator set the scene.", [0])
        _summarize_opening()

        result = await interceptor.intercept_messages(_chat(), "chat1")

        out = result["messages"]
        assert result["hidden_count"] == 4
        assert out[0]["content"] == (
            "[Summary of 3 earlier events]:\n- The narrator set the scene.\n"
            "- The party set out north.\n- They reached a bridge."
        )
        assert [m["content"] for m in out[1:]] == ["A troll blocks the bridge.", "I offer the troll a coin."]

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, interceptor):
        messages = _chat()[:2]
        result = await interceptor.intercept_messages(messages, "chat1")

        assert result == {
            "messages": messages,
            "hidden_count": 0,
            "injected_memories": 0,
            "archived": 0,
        }

    @pytest.mark.asyncio
    async def test_vectors_disabled(self, interceptor):
        _summarize_opening()
        interceptor.vector_config["enabled"] = False

        result = await interceptor.intercept_messages(_chat(), "chat1")

        assert result["hidden_count"] == 3
        assert result["archived"] == 0
        assert interceptor.vector_store.get_vectors_for_chat("chat1") == []

    @pytest.mark.asyncio
    async def test_empty_messages(self, interceptor):
        result = await interceptor.intercept_messages([], "chat1")
        assert result["messages"] == []
        assert result["hidden_count"] == 0
