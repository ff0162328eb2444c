"""OpenAI embeddings generation with validation."""

import asyncio
from typing import Any, Mapping

from openai import OpenAI

from insight_engine.core.config import Settings
from insight_engine.core.errors import DimensionMismatchError, EmptyInputError, NotFoundError, UpstreamError
from insight_engine.core.logging import get_logger

logger = get_logger(__name__)


def create_openai_client(settings: Settings) -> OpenAI:
    """Build the OpenAI client owned by the application entry point."""
    return OpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.OPENAI_TIMEOUT_SECONDS,
        max_retries=settings.OPENAI_MAX_RETRIES,
    )


def insight_embedding_text(insight: Mapping[str, Any]) -> str:
    """Statement plus context note, space-joined."""
    statement = insight.get("statement") or ""
    context_note = insight.get("context_note")
    return f"{statement} {context_note}" if context_note else statement


def concept_embedding_text(concept: Mapping[str, Any]) -> str:
    """Concept name plus description, space-joined."""
    name = concept.get("name") or ""
    description = concept.get("description")
    return f"{name} {description}" if description else name


class EmbeddingService:
    """
    Converts insight and concept text into fixed-length vectors.

    The OpenAI client is injected so tests can pass a fake and the
    application controls a single client's lifecycle.
    """

    def __init__(self, client: OpenAI, model: str = "text-embedding-3-small", dimension: int = 1536):
        self.client = client
        self.model = model
        self.dimension = dimension

    @classmethod
    def from_settings(cls, client: OpenAI, settings: Settings) -> "EmbeddingService":
        return cls(client, model=settings.EMBEDDING_MODEL, dimension=settings.EMBEDDING_DIM)

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, in input order

        Raises:
            EmptyInputError: If any text is empty or whitespace
            UpstreamError: If the API returns fewer vectors than texts
            DimensionMismatchError: If a vector has the wrong length
        """
        if not texts:
            return []

        cleaned = []
        for text in texts:
            if not text or not text.strip():
                raise EmptyInputError("Text cannot be empty")
            cleaned.append(text.strip())

        response = self.client.embeddings.create(model=self.model, input=cleaned)

        if not response.data or len(response.data) != len(cleaned):
            raise UpstreamError(
                f"Embedding API returned {len(response.data or [])} vectors for {len(cleaned)} texts"
            )

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = list(embedding_obj.embedding)
            if len(embedding) != self.dimension:
                raise DimensionMismatchError(
                    self.dimension,
                    len(embedding),
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {self.dimension}, got {len(embedding)}",
                )
            embeddings.append(embedding)

        logger.debug(f"Generated {len(embeddings)} embeddings using {self.model}")
        return embeddings

    def generate_embedding(self, text: str) -> list[float]:
        """
        Generate a single embedding.

        Raises:
            EmptyInputError: If text is empty or whitespace
            UpstreamError: If the API returns no data
        """
        if not text or not text.strip():
            raise EmptyInputError("Text cannot be empty")
        return self.embed_texts([text])[0]

    def generate_insight_embedding(self, insight: Mapping[str, Any]) -> list[float]:
        return self.generate_embedding(insight_embedding_text(insight))

    def generate_concept_embedding(self, concept: Mapping[str, Any]) -> list[float]:
        return self.generate_embedding(concept_embedding_text(concept))

    def generate_and_store_insight_embedding(self, store: Any, insight_id: str) -> list[float]:
        """
        Fetch an insight, embed it and persist the vector.

        Raises:
            NotFoundError: If the insight does not exist
        """
        insight = store.get_insight(insight_id)
        if not insight:
            raise NotFoundError("Insight", insight_id)

        embedding = self.generate_insight_embedding(insight)
        store.update_insight_embedding(insight_id, embedding)
        return embedding

    def generate_and_store_concept_embedding(self, store: Any, concept_id: str) -> list[float]:
        """
        Fetch a concept, embed it and persist the vector.

        Raises:
            NotFoundError: If the concept does not exist
        """
        concept = store.get_concept(concept_id)
        if not concept:
            raise NotFoundError("Concept", concept_id)

        embedding = self.generate_concept_embedding(concept)
        store.update_concept_embedding(concept_id, embedding)
        return embedding

    async def embed_texts_async(self, texts: list[str]) -> list[list[float]]:
        """Async wrapper around embed_texts using thread pool."""
        return await asyncio.to_thread(self.embed_texts, texts)
