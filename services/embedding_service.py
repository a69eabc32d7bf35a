"""Candidate profile embeddings produced with sentence-transformers."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from models.domain import Candidate, utcnow
from services.errors import InputError

logger = logging.getLogger(__name__)


class SentenceTransformerEncoder:
    """Lazily loads the configured model on first use."""

    def __init__(self, model_name: str, *, device: Optional[str] = None) -> None:
        self.model_name = model_name
        self.device = device
        self._model = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading embedding model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name, device=self.device)
            return self._model

    def encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        vectors = model.encode(
            texts,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [[float(value) for value in vector] for vector in vectors]


def build_profile_text(candidate: Candidate) -> str:
    if candidate.profile_text and candidate.profile_text.strip():
        return candidate.profile_text.strip()
    parts = [candidate.candidate_id]
    if candidate.category:
        parts.append(f"category: {candidate.category}")
    return " | ".join(parts)


class EmbeddingService:
    def __init__(
        self,
        directory,
        *,
        encoder: Optional[Any] = None,
        encoder_factory: Optional[Callable[[], Any]] = None,
        clock: Optional[Callable] = None,
    ) -> None:
        self.directory = directory
        self._encoder = encoder
        self._encoder_factory = encoder_factory
        self._clock = clock or utcnow

    @property
    def encoder(self):
        if self._encoder is None:
            if self._encoder_factory is None:
                raise RuntimeError("No embedding encoder configured")
            self._encoder = self._encoder_factory()
        return self._encoder

    def refresh_candidate(self, candidate_id: str) -> List[float]:
        candidate = self.directory.get(candidate_id)
        if candidate is None:
            raise InputError(f"Unknown candidate {candidate_id!r}")
        text = build_profile_text(candidate)
        vectors = self.encoder.encode([text])
        if not vectors or not vectors[0]:
            raise RuntimeError(f"Encoder returned no vector for candidate {candidate_id}")
        vector = list(vectors[0])
        self.directory.update_embedding(candidate_id, vector, self._clock())
        logger.info("Refreshed embedding for candidate %s (%d dims)", candidate_id, len(vector))
        return vector
