"""Embedding provider backed by SentenceTransformer."""

import asyncio
import logging
from typing import List, Optional

from sentence_transformers import SentenceTransformer

from brain.errors import EmbeddingDimensionError

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """Maps text to a fixed-dimension vector.

    The model is loaded once and shared; encoding runs in a worker thread so
    concurrent incident handlers are not blocked while a vector is computed.
    """

    def __init__(self,
                 model_name: str = "all-MiniLM-L6-v2",
                 dimension: Optional[int] = None,
                 model: Optional[SentenceTransformer] = None):
        """Initialize the embedder.

        Args:
            model_name: SentenceTransformer model name
            dimension: Expected vector length (None to accept whatever the model produces)
            model: Preloaded model instance
        """
        self.model_name = model_name
        self.dimension = dimension
        if model is None:
            logger.info(f"Loading embedding model {model_name}")
            model = SentenceTransformer(model_name)
        self.model = model

    def _encode(self, text: str) -> List[float]:
        embedding = self.model.encode(text)
        return [float(x) for x in embedding.tolist()]

    async def embed(self, text: str) -> List[float]:
        """Generate an embedding for text.

        Args:
            text: Text to embed

        Returns:
            List of float values representing the embedding

        Raises:
            EmbeddingDimensionError: If the vector length differs from the configured dimension
        """
        vector = await asyncio.to_thread(self._encode, text)

        if self.dimension is not None and len(vector) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(vector))

        return vector
