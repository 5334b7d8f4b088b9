"""Embedding primitives for semantic trend clustering."""
from __future__ import annotations

import hashlib
import importlib.util
import json
import logging
from typing import Optional

import numpy as np
from sqlalchemy.orm import Session

from ..models.trend import TrendEmbedding, TrendEvent
from .evidence_normalizer import utcnow

logger = logging.getLogger(__name__)

SENTENCE_TRANSFORMERS_AVAILABLE = importlib.util.find_spec("sentence_transformers") is not None
SentenceTransformer = None


class TrendEmbeddingEngine:
    """Lazy sentence-transformers wrapper + vector math helpers."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._encoder = None

    def get_encoder(self):
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            return None
        if self._encoder is not None:
            return self._encoder

        global SentenceTransformer
        try:
            if SentenceTransformer is None:
                from sentence_transformers import SentenceTransformer as _SentenceTransformer

                SentenceTransformer = _SentenceTransformer
            self._encoder = SentenceTransformer(self.model_name, device="cpu")
            return self._encoder
        except Exception as exc:
            logger.warning("Embedding encoder unavailable for model %s: %s", self.model_name, exc)
            self._encoder = None
            return None

    @property
    def available(self) -> bool:
        return self.get_encoder() is not None

    def encode(self, text: str) -> Optional[np.ndarray]:
        encoder = self.get_encoder()
        if encoder is None:
            return None
        try:
            return np.asarray(encoder.encode(text, convert_to_numpy=True), dtype=float)
        except Exception as exc:
            logger.warning("Failed to encode embedding text for model %s: %s", self.model_name, exc)
            return None

    @staticmethod
    def cosine_similarity(left: np.ndarray, right: np.ndarray) -> float:
        left_norm = np.linalg.norm(left)
        right_norm = np.linalg.norm(right)
        if left_norm == 0 or right_norm == 0:
            return 0.0
        return float(np.dot(left, right) / (left_norm * right_norm))

    @staticmethod
    def serialize(vector: np.ndarray) -> str:
        return json.dumps([float(value) for value in vector])

    @staticmethod
    def deserialize(payload: str | None) -> Optional[np.ndarray]:
        if not payload:
            return None
        try:
            return np.asarray(json.loads(payload), dtype=float)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed embedding payload")
            return None


class TrendEmbeddingRepository:
    """Persistence helpers for trend event embeddings."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def build_trend_text(event: TrendEvent) -> str:
        parts = [event.canonical_label]
        aliases = [str(alias) for alias in (event.alias_variants or []) if str(alias).strip()]
        if aliases:
            parts.append(f"Also known as: {', '.join(sorted(dict.fromkeys(aliases)))}")
        if event.entity_type:
            parts.append(f"Type: {event.entity_type}")
        return " | ".join(parts)

    @classmethod
    def build_content_hash(cls, event: TrendEvent) -> str:
        return hashlib.sha256(cls.build_trend_text(event).encode("utf-8")).hexdigest()

    def get_for_event(self, trend_event_id: int) -> Optional[TrendEmbedding]:
        return self.db.query(TrendEmbedding).filter(TrendEmbedding.trend_event_id == trend_event_id).first()

    def get_by_event_ids(self, event_ids: list[int]) -> dict[int, TrendEmbedding]:
        if not event_ids:
            return {}
        rows = self.db.query(TrendEmbedding).filter(TrendEmbedding.trend_event_id.in_(event_ids)).all()
        return {row.trend_event_id: row for row in rows}

    def ensure_embedding(self, event: TrendEvent, engine: TrendEmbeddingEngine) -> Optional[np.ndarray]:
        """Vector for ``event``, re-encoding only when its text or the model changed."""
        content_hash = self.build_content_hash(event)
        existing = self.get_for_event(event.id)
        if (
            existing is not None
            and existing.content_hash == content_hash
            and existing.embedding_model == engine.model_name
        ):
            vector = engine.deserialize(existing.embedding)
            if vector is not None:
                return vector

        vector = engine.encode(self.build_trend_text(event))
        if vector is None:
            return None
        payload = engine.serialize(vector)
        if existing is not None:
            existing.embedding = payload
            existing.embedding_model = engine.model_name
            existing.content_hash = content_hash
            existing.updated_at = utcnow()
        else:
            self.db.add(
                TrendEmbedding(
                    trend_event_id=event.id,
                    embedding=payload,
                    embedding_model=engine.model_name,
                    content_hash=content_hash,
                )
            )
        return vector
