"""LLM query expansion for Unity documentation retrieval.

One user question becomes up to three search queries (exact restatement,
Unity class/keyword focus, how-to phrasing), each searched independently so
that documents written with different vocabulary are still found.
"""
import asyncio
import logging
from typing import Any

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import PromptTemplate

from unity_docs_rag.config import EXPANSION_TIMEOUT, MAX_QUERY_VARIANTS
from unity_docs_rag.errors import ExpansionError

logger = logging.getLogger(__name__)


def parse_queries(raw: str, max_queries: int = MAX_QUERY_VARIANTS) -> list[str]:
    """Split model output into queries: one per line, stripped, blanks dropped.

    No other validation is applied; numbering or commentary the model adds
    despite the instructions is passed through as-is.
    """
    queries = [line.strip() for line in raw.splitlines()]
    return [q for q in queries if q][:max_queries]


class QueryExpander:
    """Generate differently-phrased search queries for a question with an LLM."""

    def __init__(
        self,
        llm: Any,
        prompt: PromptTemplate,
        max_queries: int = MAX_QUERY_VARIANTS,
        timeout: float = EXPANSION_TIMEOUT,
    ) -> None:
        self._chain = prompt | llm | StrOutputParser()
        self.max_queries = max_queries
        self.timeout = timeout

    async def expand(self, question: str) -> list[str]:
        logger.info("Generating query variations...")
        try:
            raw = await asyncio.wait_for(
                self._chain.ainvoke({"question": question}), self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ExpansionError(
                f"Query expansion timed out after {self.timeout:g}s"
            ) from exc
        except Exception as exc:
            raise ExpansionError(f"Query expansion failed: {exc}") from exc

        queries = parse_queries(raw, self.max_queries)
        if not queries:
            logger.warning("Expansion model returned no usable queries: %r", raw)
        logger.info("Generated queries: %s", queries)
        return queries
