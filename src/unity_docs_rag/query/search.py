"""Hybrid search client for the documentation store.

The store is a Supabase (PostgREST) database exposing a ``hybrid_search``
SQL function that ranks passages by full-text match and by embedding
similarity and fuses both rankings with Reciprocal Rank Fusion:

    score(d) = full_text_weight / (rrf_k + rank_ft(d))
             + semantic_weight / (rrf_k + rank_sem(d))

This module only embeds the query and calls that function; the fusion
itself happens in the database.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from langchain_core.embeddings import Embeddings

from unity_docs_rag.config import (
    EMBEDDING_TIMEOUT,
    HYBRID_KEYWORD_WEIGHT,
    HYBRID_SEARCH_RPC,
    HYBRID_SEMANTIC_WEIGHT,
    RRF_K,
    SEARCH_MATCH_COUNT,
    SEARCH_TIMEOUT,
)
from unity_docs_rag.errors import RetrievalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    """One passage returned by the search backend. Treated as read-only."""

    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    score: float | None = None

    @property
    def url(self) -> str | None:
        return self.metadata.get("url") or self.metadata.get("source")

    @property
    def title(self) -> str | None:
        return self.metadata.get("title")

    @property
    def doc_type(self) -> str | None:
        return self.metadata.get("doc_type") or self.metadata.get("type")


def _parse_row(row: Any) -> SearchHit:
    if not isinstance(row, dict) or "id" not in row:
        raise RetrievalError(f"Malformed search row: {row!r}")
    score = row.get("score")
    if score is None:
        score = row.get("rrf_score")
    try:
        return SearchHit(
            id=str(row["id"]),
            content=row.get("content") or "",
            metadata=dict(row.get("metadata") or {}),
            score=float(score) if score is not None else None,
        )
    except (TypeError, ValueError) as exc:
        raise RetrievalError(f"Malformed search row: {row!r}") from exc


def parse_search_rows(body: Any) -> list[SearchHit]:
    """Convert an RPC response body into hits; ``null`` means no hits."""
    if body is None:
        return []
    if not isinstance(body, list):
        raise RetrievalError(f"Expected a list of rows from hybrid search, got {type(body).__name__}")
    return [_parse_row(row) for row in body]


class HybridSearchClient:
    """Embed a query and run the backend's fused keyword + semantic ranking.

    Holds no per-request state, so one instance serves concurrent searches.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        base_url: str,
        api_key: str,
        rpc_name: str = HYBRID_SEARCH_RPC,
        match_count: int = SEARCH_MATCH_COUNT,
        full_text_weight: float = HYBRID_KEYWORD_WEIGHT,
        semantic_weight: float = HYBRID_SEMANTIC_WEIGHT,
        rrf_k: int = RRF_K,
        timeout: float = SEARCH_TIMEOUT,
        embedding_timeout: float = EMBEDDING_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.embeddings = embeddings
        self.rpc_url = f"{base_url.rstrip('/')}/rest/v1/rpc/{rpc_name}"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self.match_count = match_count
        self.full_text_weight = full_text_weight
        self.semantic_weight = semantic_weight
        self.rrf_k = rrf_k
        self.timeout = timeout
        self.embedding_timeout = embedding_timeout
        self._transport = transport

    async def _embed(self, query: str) -> list[float]:
        try:
            return await asyncio.wait_for(
                self.embeddings.aembed_query(query), self.embedding_timeout
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Embedding timed out after {self.embedding_timeout:g}s"
            ) from exc
        except Exception as exc:
            raise RetrievalError(f"Embedding failed for query {query!r}: {exc}") from exc

    async def search(self, query: str) -> list[SearchHit]:
        """Return the backend's fused ranking for *query*, best first."""
        vector = await self._embed(query)
        payload = {
            "query_text": query,
            "query_embedding": vector,
            "match_count": self.match_count,
            "full_text_weight": self.full_text_weight,
            "semantic_weight": self.semantic_weight,
            "rrf_k": self.rrf_k,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.rpc_url, json=payload, headers=self._headers)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as exc:
            raise RetrievalError(f"Hybrid search timed out after {self.timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            raise RetrievalError(
                f"Hybrid search returned HTTP {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RetrievalError(f"Hybrid search failed: {exc}") from exc

        hits = parse_search_rows(body)
        logger.debug("Query %r returned %d hits", query, len(hits))
        return hits
