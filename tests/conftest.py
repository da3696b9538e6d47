"""
Shared fixtures: a throwaway database, a deterministic embedding engine and
scripted LLM replies.
"""

import copy
import os
import re
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class FakeEmbeddingEngine:
    """Bag-of-words embeddings: each new word takes the next free slot."""

    def __init__(self, dimensions=768):
        self.dimensions = dimensions
        self.vocabulary = {}
        self.calls = 0

    def _slot(self, word):
        if word not in self.vocabulary:
            self.vocabulary[word] = len(self.vocabulary) % self.dimensions
        return self.vocabulary[word]

    def load_model(self):
        return True

    def unload_model(self):
        pass

    def is_ready(self):
        return True

    def encode(self, texts):
        self.calls += 1
        vectors = np.zeros((len(texts), self.dimensions), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in re.findall(r"\w+", text.lower()):
                vectors[row, self._slot(word)] += 1.0
        return vectors

    def encode_one(self, text):
        return self.encode([text])[0]


class ScriptedLLM:
    """Async stand-in for call_llm_helper that replays canned replies."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def __call__(self, system_prompt, user_prompt, max_tokens=500):
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        if not self.replies:
            raise Exception("API Error: no scripted reply left")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point app.database at a fresh file for the duration of a test."""
    import app.database as database

    database.close_connection()
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "lorekeeper_test.db"))
    database.init_db()
    database.init_vec_table()
    yield database.DB_PATH
    database.close_connection()


@pytest.fixture
def config():
    """A private copy of the default configuration."""
    from app.config_loader import DEFAULT_CONFIG
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingEngine()


@pytest.fixture
def scripted_llm():
    return ScriptedLLM
