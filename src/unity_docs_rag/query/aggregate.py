"""Merge per-query search results into one deduplicated candidate set."""
from collections.abc import Sequence

from unity_docs_rag.query.search import SearchHit


def aggregate(per_query_results: Sequence[Sequence[SearchHit]]) -> dict[str, SearchHit]:
    """Flatten results in query order, keeping the first hit seen for each id.

    Later duplicates are dropped as-is: their content and score are not
    merged into the kept hit. The returned dict preserves first-seen order.
    """
    candidates: dict[str, SearchHit] = {}
    for hits in per_query_results:
        for hit in hits:
            if hit.id not in candidates:
                candidates[hit.id] = hit
    return candidates
