"""Query embeddings: a remote Hugging Face / TEI endpoint or local sentence-transformers."""
from langchain_core.embeddings import Embeddings

from unity_docs_rag.config import (
    EMBEDDING_ENDPOINT_URL,
    EMBEDDING_MODEL,
    HUGGINGFACEHUB_API_TOKEN,
)


def get_embeddings() -> Embeddings:
    """Return a LangChain-compatible Embeddings instance.

    Uses the inference endpoint at EMBEDDING_ENDPOINT_URL when set, otherwise
    loads EMBEDDING_MODEL locally.
    """
    if EMBEDDING_ENDPOINT_URL:
        from langchain_huggingface import HuggingFaceEndpointEmbeddings
        return HuggingFaceEndpointEmbeddings(
            model=EMBEDDING_ENDPOINT_URL,
            huggingfacehub_api_token=HUGGINGFACEHUB_API_TOKEN,
        )
    from langchain_huggingface import HuggingFaceEmbeddings
    return HuggingFaceEmbeddings(model_name=EMBEDDING_MODEL)
