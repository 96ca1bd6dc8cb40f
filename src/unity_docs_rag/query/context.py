"""Assemble reranked passages into the grounding text of the answer prompt."""
from collections.abc import Sequence

from unity_docs_rag.config import CONTEXT_SEPARATOR, MAX_CONTEXT_CHARS
from unity_docs_rag.query.rerank import RankedResult


def assemble_context(
    ranked: Sequence[RankedResult],
    separator: str = CONTEXT_SEPARATOR,
    max_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    """Join passage texts in rank order with *separator*.

    With ``max_chars`` > 0, passages are added while the text fits; the first
    passage that would overflow is cut to the remaining budget and nothing
    after it is included. Separators count towards the budget.
    """
    if max_chars <= 0:
        return separator.join(r.hit.content for r in ranked)

    parts: list[str] = []
    used = 0
    for r in ranked:
        sep_len = len(separator) if parts else 0
        remaining = max_chars - used - sep_len
        if remaining <= 0:
            break
        text = r.hit.content
        if len(text) > remaining:
            parts.append(text[:remaining])
            break
        parts.append(text)
        used += sep_len + len(text)
    return separator.join(parts)
