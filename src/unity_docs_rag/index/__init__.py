"""Query-time embeddings matching the populated search store."""
from unity_docs_rag.index.embed import get_embeddings

__all__ = ["get_embeddings"]
