"""Cross-encoder reranking through a Cohere-compatible rerank API.

The candidate set is scored against the user's original question (never the
expanded queries) and narrowed to ``top_k`` passages: retrieval casts a wide
net, reranking picks the few passages the answer is built from.
"""
import asyncio
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from unity_docs_rag.config import RERANK_MODEL, RERANK_TIMEOUT, RERANK_TOP_K
from unity_docs_rag.errors import RerankError
from unity_docs_rag.query.search import SearchHit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedResult:
    hit: SearchHit
    score: float
    rank: int


def rank_results(
    hits: list[SearchHit],
    results: Any,
    top_k: int,
) -> list[RankedResult]:
    """Turn rerank API results into RankedResults ordered by descending score.

    *results* is the ``results`` array of the response: objects with the
    ``index`` of a passage in *hits* and its ``relevance_score``. The sort is
    stable, so ties keep the service's order.
    """
    if not isinstance(results, list):
        raise RerankError("Rerank response has no 'results' list")
    scored: list[tuple[float, SearchHit]] = []
    seen: set[int] = set()
    for item in results:
        try:
            index = int(item["index"])
            score = float(item["relevance_score"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RerankError(f"Malformed rerank result: {item!r}") from exc
        if not 0 <= index < len(hits):
            raise RerankError(f"Rerank result index {index} out of range for {len(hits)} passages")
        if index in seen:
            raise RerankError(f"Rerank result index {index} repeated")
        if not math.isfinite(score):
            raise RerankError(f"Rerank score for index {index} is not finite: {score}")
        seen.add(index)
        scored.append((score, hits[index]))

    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [
        RankedResult(hit=hit, score=score, rank=rank)
        for rank, (score, hit) in enumerate(scored[:top_k])
    ]


class Reranker:
    """Score candidates against the question and keep the best ``top_k``."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = RERANK_MODEL,
        top_k: int = RERANK_TOP_K,
        timeout: float = RERANK_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self.model = model
        self.top_k = top_k
        self.timeout = timeout
        self._transport = transport

    async def rerank(
        self, candidates: Mapping[str, SearchHit], question: str
    ) -> list[RankedResult]:
        if not candidates:
            return []

        hits = list(candidates.values())
        payload = {
            "model": self.model,
            "query": question,
            "documents": [hit.content for hit in hits],
            "top_n": self.top_k,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await asyncio.wait_for(
                    client.post(self.api_url, json=payload, headers=self._headers),
                    self.timeout,
                )
                response.raise_for_status()
                body = response.json()
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise RerankError(f"Rerank timed out after {self.timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            raise RerankError(
                f"Rerank returned HTTP {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RerankError(f"Rerank failed: {exc}") from exc

        results = body.get("results") if isinstance(body, dict) else None
        ranked = rank_results(hits, results, self.top_k)
        logger.info("Reranked %d candidates down to %d", len(hits), len(ranked))
        return ranked
