"""Long-term memory: first-turn recall injection and the remember tool's backing store."""

import asyncio
import json
import logging
import urllib.request
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import chromadb
from chromadb import Documents, EmbeddingFunction, Embeddings

from .context import MemoryEntry
from .messages import ConversationKey

logger = logging.getLogger("courier_agent.memory")

# Cosine distance below which a new memory replaces an existing one.
DEDUP_DISTANCE = 0.15


class MemoryStore(ABC):
    @abstractmethod
    async def recall(self, key: ConversationKey, query: str) -> list[MemoryEntry]:
        """Return entries relevant to ``query``, most relevant first."""
        ...

    async def remember(self, key: ConversationKey, text: str) -> str | None:
        """Store a fact for later recall and return its id. Optional."""
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OpenAIEmbeddingFunction(EmbeddingFunction):
    """Calls an OpenAI-compatible ``/embeddings`` endpoint for ChromaDB."""

    def __init__(self, api_base: str, api_key: str, model: str = "text-embedding-3-small"):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model

    def __call__(self, input: Documents) -> Embeddings:
        payload = json.dumps({"model": self.model, "input": input}).encode()
        req = urllib.request.Request(
            f"{self.api_base}/embeddings",
            data=payload,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        with urllib.request.urlopen(req, timeout=30) as resp:
            data = json.loads(resp.read())
        sorted_embs = sorted(data["data"], key=lambda x: x["index"])
        return [e["embedding"] for e in sorted_embs]


class ChromaMemoryStore(MemoryStore):
    """Semantic memory in a ChromaDB collection, scoped per conversation sender.

    Memories are tagged with ``channel`` and ``sender`` so that one user's
    facts are never recalled into another user's conversation.
    """

    def __init__(
        self,
        path: str | Path,
        embedding_function: Any = None,
        collection: Any = None,
        limit: int = 4,
        min_similarity: float = 0.3,
    ):
        self.path = Path(path)
        self.embedding_function = embedding_function
        self.limit = limit
        self.min_similarity = min_similarity
        self._collection = collection

    def _get_collection(self):
        if self._collection is not None:
            return self._collection
        self.path.mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(path=str(self.path))
        kwargs: dict[str, Any] = {"name": "courier_memory", "metadata": {"hnsw:space": "cosine"}}
        if self.embedding_function is not None:
            kwargs["embedding_function"] = self.embedding_function
        self._collection = client.get_or_create_collection(**kwargs)
        return self._collection

    @staticmethod
    def _where(key: ConversationKey) -> dict:
        return {"$and": [{"channel": key.channel}, {"sender": key.sender}]}

    def _recall_sync(self, key: ConversationKey, query: str) -> list[MemoryEntry]:
        col = self._get_collection()
        results = col.query(
            query_texts=[query],
            n_results=self.limit,
            where=self._where(key),
            include=["documents", "distances"],
        )
        entries = []
        for i, _doc_id in enumerate(results["ids"][0]):
            similarity = round(1 - results["distances"][0][i], 4)
            if similarity < self.min_similarity:
                continue
            entries.append(MemoryEntry(text=results["documents"][0][i], score=similarity))
        entries.sort(key=lambda e: e.score, reverse=True)
        return entries

    def _remember_sync(self, key: ConversationKey, text: str) -> str:
        col = self._get_collection()
        now = _now_iso()
        existing = col.query(
            query_texts=[text],
            n_results=1,
            where=self._where(key),
            include=["metadatas", "distances"],
        )
        if existing["ids"] and existing["ids"][0] and existing["distances"][0][0] < DEDUP_DISTANCE:
            mem_id = existing["ids"][0][0]
            meta = dict(existing["metadatas"][0][0])
            meta["updated_at"] = now
            col.update(ids=[mem_id], documents=[text], metadatas=[meta])
            return mem_id

        mem_id = f"mem_{uuid4().hex[:12]}"
        col.add(
            ids=[mem_id],
            documents=[text],
            metadatas=[{
                "channel": key.channel,
                "sender": key.sender,
                "created_at": now,
                "updated_at": now,
            }],
        )
        return mem_id

    async def recall(self, key: ConversationKey, query: str) -> list[MemoryEntry]:
        return await asyncio.to_thread(self._recall_sync, key, query)

    async def remember(self, key: ConversationKey, text: str) -> str:
        mem_id = await asyncio.to_thread(self._remember_sync, key, text)
        logger.debug("Stored memory %s for %s", mem_id, key)
        return mem_id
