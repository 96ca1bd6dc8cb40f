"""Request orchestration: expand, retrieve, aggregate, rerank, assemble, answer.

A :class:`RAGPipeline` holds the process-wide service components; each
question gets its own :class:`PipelineRun`, which walks the states below and
owns every intermediate result of that request:

    RECEIVED → EXPANDING → RETRIEVING → AGGREGATING → RERANKING
             → ASSEMBLING → GENERATING → STREAMING → COMPLETED

Any error moves the run to FAILED and is re-raised as a :class:`RAGError`
naming the stage. There are no retries and no partial answers after a
failure, but fragments already streamed cannot be taken back.
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum

from unity_docs_rag.config import (
    ANSWER_PROMPT_FILE,
    CONTEXT_SEPARATOR,
    EXPANSION_PROMPT_FILE,
    ISOLATE_SEARCH_FAILURES,
    MAX_CONTEXT_CHARS,
    load_service_settings,
)
from unity_docs_rag.errors import RAGError, RetrievalError
from unity_docs_rag.prompts import load_answer_prompt, load_expansion_prompt
from unity_docs_rag.query.aggregate import aggregate
from unity_docs_rag.query.chain import AnswerStreamer, create_llm
from unity_docs_rag.query.context import assemble_context
from unity_docs_rag.query.expand import QueryExpander
from unity_docs_rag.query.rerank import RankedResult, Reranker
from unity_docs_rag.query.search import HybridSearchClient, SearchHit

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    EXPANDING = "expanding"
    RETRIEVING = "retrieving"
    AGGREGATING = "aggregating"
    RERANKING = "reranking"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class RAGPipeline:
    """Wires the retrieval and generation components for many requests."""

    def __init__(
        self,
        expander: QueryExpander,
        search_client: HybridSearchClient,
        reranker: Reranker,
        answer_streamer: AnswerStreamer,
        context_separator: str = CONTEXT_SEPARATOR,
        max_context_chars: int = MAX_CONTEXT_CHARS,
        isolate_search_failures: bool = ISOLATE_SEARCH_FAILURES,
    ) -> None:
        self.expander = expander
        self.search_client = search_client
        self.reranker = reranker
        self.answer_streamer = answer_streamer
        self.context_separator = context_separator
        self.max_context_chars = max_context_chars
        self.isolate_search_failures = isolate_search_failures

    def start(self, question: str) -> "PipelineRun":
        return PipelineRun(self, question)


class PipelineRun:
    """State and intermediate results of one question."""

    def __init__(self, pipeline: RAGPipeline, question: str) -> None:
        self.pipeline = pipeline
        self.question = question
        self.state = PipelineState.RECEIVED
        self.queries: list[str] = []
        self.candidates: dict[str, SearchHit] = {}
        self.ranked: list[RankedResult] = []
        self.context = ""
        self.error: RAGError | None = None
        self._started = False

    def _advance(self, state: PipelineState) -> None:
        logger.debug("Pipeline %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, error: RAGError | None) -> None:
        self.error = error
        self._advance(PipelineState.FAILED)

    async def _search_one(self, query: str) -> list[SearchHit]:
        try:
            return await self.pipeline.search_client.search(query)
        except RetrievalError as exc:
            if not self.pipeline.isolate_search_failures:
                raise
            logger.warning("Search failed for query %r, continuing without it: %s", query, exc)
            return []

    async def _retrieve(self) -> list[list[SearchHit]]:
        """Search every query concurrently; results come back in query order.

        If one search fails the others are cancelled and the request fails.
        """
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(self._search_one(q)) for q in self.queries]
        except ExceptionGroup as group:
            first = group.exceptions[0]
            if isinstance(first, RetrievalError):
                raise RetrievalError(str(first)) from first
            raise RetrievalError(f"Search failed: {first}") from first
        return [task.result() for task in tasks]

    async def stream(self) -> AsyncIterator[str]:
        """Run the pipeline and yield answer fragments. Can be consumed once."""
        if self._started:
            raise RuntimeError("A pipeline run can only be streamed once")
        self._started = True
        p = self.pipeline
        try:
            self._advance(PipelineState.EXPANDING)
            self.queries = await p.expander.expand(self.question)

            self._advance(PipelineState.RETRIEVING)
            per_query = await self._retrieve()

            self._advance(PipelineState.AGGREGATING)
            self.candidates = aggregate(per_query)
            logger.info(
                "Found %d unique passages from %d queries",
                len(self.candidates),
                len(self.queries),
            )

            self._advance(PipelineState.RERANKING)
            self.ranked = await p.reranker.rerank(self.candidates, self.question)

            self._advance(PipelineState.ASSEMBLING)
            self.context = assemble_context(
                self.ranked, p.context_separator, p.max_context_chars
            )

            self._advance(PipelineState.GENERATING)
            async with aclosing(
                p.answer_streamer.stream(self.question, self.context)
            ) as fragments:
                async for fragment in fragments:
                    if self.state is PipelineState.GENERATING:
                        self._advance(PipelineState.STREAMING)
                    yield fragment
            self._advance(PipelineState.COMPLETED)
        except RAGError as exc:
            self._fail(exc)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Request cancelled during %s", self.state.value)
            self._fail(None)
            raise
        except Exception as exc:
            error = RAGError(f"Unexpected error: {exc}", stage=self.state.value)
            self._fail(error)
            raise error from exc

    async def collect(self) -> str:
        """Consume the whole stream and return the answer text."""
        return "".join([fragment async for fragment in self.stream()])


def build_pipeline() -> RAGPipeline:
    """Build a pipeline from configuration.

    Raises ConfigurationError when credentials are missing or a prompt
    override is invalid.
    """
    from unity_docs_rag.index import get_embeddings

    settings = load_service_settings()
    expansion_prompt = load_expansion_prompt(EXPANSION_PROMPT_FILE)
    answer_prompt = load_answer_prompt(ANSWER_PROMPT_FILE)

    llm = create_llm(settings.llm_provider, settings.hf_token)
    embeddings = get_embeddings()
    return RAGPipeline(
        expander=QueryExpander(llm, expansion_prompt),
        search_client=HybridSearchClient(
            embeddings, settings.supabase_url, settings.supabase_key
        ),
        reranker=Reranker(settings.rerank_api_url, settings.rerank_api_key),
        answer_streamer=AnswerStreamer(llm, answer_prompt),
    )
