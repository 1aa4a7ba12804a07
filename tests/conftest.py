"""Shared fixtures: isolated storage per test and a fake Ollama."""
import re
import zlib
from typing import Dict, List

import pytest

from docchat import config, db
from docchat.llm_client import ollama_client
from docchat.rag import store_faiss

EMBED_DIM = 64


def fake_embedding(text: str) -> List[float]:
    """Hashed bag-of-words vector, so texts sharing words land close together."""
    vector = [0.0] * EMBED_DIM
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % EMBED_DIM] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeOllama:
    """Stands in for the Ollama HTTP API."""

    def __init__(self):
        self.reply = "This is a fake answer."
        self.models = [config.CHAT_MODEL, config.EMBEDDING_MODEL]
        self.chat_calls: List[List[Dict[str, str]]] = []
        self.embedded: List[str] = []

    async def embeddings(self, prompt: str, model: str = None) -> Dict:
        self.embedded.append(prompt)
        return {"embedding": fake_embedding(prompt)}

    async def chat(self, messages, model: str = None, temperature=None) -> Dict:
        self.chat_calls.append(messages)
        return {"message": {"role": "assistant", "content": self.reply}}

    async def list_models(self) -> List[str]:
        return list(self.models)


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    """Point the database, index and uploads at a per-test directory."""
    data_dir = tmp_path / "data"
    upload_dir = data_dir / "uploads"
    upload_dir.mkdir(parents=True)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(config, "DB_PATH", data_dir / "docchat.sqlite")
    monkeypatch.setattr(config, "VECTOR_INDEX_PATH", data_dir / "vectors.index")
    monkeypatch.setattr(config, "METADATA_PATH", data_dir / "metadata.json")

    store_faiss.reset_vector_store()
    db.init_database()
    yield data_dir
    store_faiss.reset_vector_store()


@pytest.fixture
def fake_ollama(monkeypatch) -> FakeOllama:
    fake = FakeOllama()
    monkeypatch.setattr(ollama_client, "embeddings", fake.embeddings)
    monkeypatch.setattr(ollama_client, "chat", fake.chat)
    monkeypatch.setattr(ollama_client, "list_models", fake.list_models)
    return fake


@pytest.fixture
def make_user():
    """Create a user row directly and return it."""
    counter = {"n": 0}

    def _make(email: str = None):
        counter["n"] += 1
        n = counter["n"]
        return db.create_user(
            f"user-{n}",
            f"user{n}",
            email or f"user{n}@example.com",
            "not-a-real-hash",
        )

    return _make
