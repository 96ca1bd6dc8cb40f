"""Tests for request orchestration, including the end-to-end Unity scenario."""
import asyncio
import json
import logging
import re
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.fake import FakeListLLM, FakeStreamingListLLM
from langchain_core.language_models.llms import LLM
from langchain_core.outputs import GenerationChunk

from unity_docs_rag.config import ServiceSettings
from unity_docs_rag.errors import (
    ConfigurationError,
    ExpansionError,
    GenerationError,
    RAGError,
    RerankError,
    RetrievalError,
)
from unity_docs_rag.prompts import ABSTAIN_PHRASE, load_answer_prompt, load_expansion_prompt
from unity_docs_rag.query.chain import AnswerStreamer
from unity_docs_rag.query.expand import QueryExpander
from unity_docs_rag.query.pipeline import PipelineState, RAGPipeline, build_pipeline
from unity_docs_rag.query.rerank import RankedResult, Reranker
from unity_docs_rag.query.search import HybridSearchClient, SearchHit

QUESTION = "How do I move a GameObject in Unity?"
EXPANSION = (
    "How do I move a GameObject in Unity?\n"
    "Transform.Translate Transform.position\n"
    "How to move a GameObject with a C# script"
)
TRANSLATE_PASSAGE = (
    "To move a GameObject, call transform.Translate(Vector3.forward * Time.deltaTime) "
    "or assign transform.position directly."
)

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class StaticEmbeddings(Embeddings):
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[0.0, 1.0] for _ in texts]

    def embed_query(self, text: str) -> list[float]:
        return [0.0, 1.0]


class ContextEchoLLM(LLM):
    """Answers from the prompt's context: the Translate API if present, else abstains."""

    prompts: list[str] = []

    @property
    def _llm_type(self) -> str:
        return "context-echo"

    def _answer(self, prompt: str) -> str:
        context = prompt.split("Context:", 1)[1].split("Question:", 1)[0]
        if "transform.Translate" in context:
            return "Call transform.Translate in Update to move the GameObject."
        return ABSTAIN_PHRASE + "."

    def _call(self, prompt: str, stop=None, run_manager=None, **kwargs: Any) -> str:
        self.prompts.append(prompt)
        return self._answer(prompt)

    def _stream(self, prompt: str, stop=None, run_manager=None, **kwargs: Any) -> Iterator[GenerationChunk]:
        self.prompts.append(prompt)
        for word in re.findall(r"\S+\s*", self._answer(prompt)):
            yield GenerationChunk(text=word)


class FakeSearch:
    """Search client returning canned hits per query after a per-query delay."""

    def __init__(self, results: dict[str, list[SearchHit]], delays: dict[str, float] | None = None,
                 fail_on: str | None = None) -> None:
        self.results = results
        self.delays = delays or {}
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.completed: list[str] = []
        self.cancelled: list[str] = []

    async def search(self, query: str) -> list[SearchHit]:
        self.calls.append(query)
        try:
            await asyncio.sleep(self.delays.get(query, 0))
        except asyncio.CancelledError:
            self.cancelled.append(query)
            raise
        if query == self.fail_on:
            raise RetrievalError(f"Hybrid search returned HTTP 503 for {query!r}")
        self.completed.append(query)
        return list(self.results.get(query, []))


class FakeReranker:
    """Keeps candidate order; scores descend with position."""

    def __init__(self, top_k: int = 5, error: Exception | None = None) -> None:
        self.top_k = top_k
        self.error = error
        self.calls: list[tuple[list[str], str]] = []

    async def rerank(self, candidates, question) -> list[RankedResult]:
        self.calls.append((list(candidates), question))
        if self.error is not None:
            raise self.error
        hits = list(candidates.values())[: self.top_k]
        return [RankedResult(hit=h, score=1.0 - i / 10, rank=i) for i, h in enumerate(hits)]


def _hit(hit_id: str, content: str | None = None) -> SearchHit:
    return SearchHit(id=hit_id, content=content or f"passage {hit_id}")


def _pipeline(
    search,
    reranker=None,
    expansion: str = "q1\nq2\nq3",
    answer_llm=None,
    **kwargs,
) -> RAGPipeline:
    return RAGPipeline(
        expander=QueryExpander(FakeListLLM(responses=[expansion]), load_expansion_prompt()),
        search_client=search,
        reranker=reranker or FakeReranker(),
        answer_streamer=AnswerStreamer(
            answer_llm or FakeStreamingListLLM(responses=["The answer."]),
            load_answer_prompt(),
        ),
        **kwargs,
    )


def _drain(run) -> tuple[list[str], BaseException | None]:
    received: list[str] = []

    async def consume():
        async for fragment in run.stream():
            received.append(fragment)

    try:
        asyncio.run(consume())
    except BaseException as exc:  # noqa: BLE001 - returned for assertions
        return received, exc
    return received, None


# ---------------------------------------------------------------------------
# Happy path and state machine
# ---------------------------------------------------------------------------


class TestPipelineRun:

    def test_collect_returns_answer_and_completes(self):
        search = FakeSearch({"q1": [_hit("a")], "q2": [_hit("b")], "q3": []})
        run = _pipeline(search).start("question")
        answer = asyncio.run(run.collect())
        assert answer == "The answer."
        assert run.state is PipelineState.COMPLETED
        assert run.queries == ["q1", "q2", "q3"]
        assert list(run.candidates) == ["a", "b"]
        assert [r.hit.id for r in run.ranked] == ["a", "b"]
        assert run.context == "passage a\n\n---\n\npassage b"
        assert run.error is None

    def test_state_transitions_in_order(self, caplog):
        caplog.set_level(logging.DEBUG, logger="unity_docs_rag.query.pipeline")
        run = _pipeline(FakeSearch({"q1": [_hit("a")]})).start("question")
        asyncio.run(run.collect())
        transitions = [
            m.split("Pipeline ", 1)[1]
            for m in caplog.messages
            if m.startswith("Pipeline ")
        ]
        assert transitions == [
            "received -> expanding",
            "expanding -> retrieving",
            "retrieving -> aggregating",
            "aggregating -> reranking",
            "reranking -> assembling",
            "assembling -> generating",
            "generating -> streaming",
            "streaming -> completed",
        ]

    def test_starts_in_received_state(self):
        run = _pipeline(FakeSearch({})).start("question")
        assert run.state is PipelineState.RECEIVED

    def test_each_query_searched_once(self):
        search = FakeSearch({})
        asyncio.run(_pipeline(search).start("question").collect())
        assert sorted(search.calls) == ["q1", "q2", "q3"]

    def test_reranks_against_original_question(self):
        reranker = FakeReranker()
        search = FakeSearch({"q1": [_hit("a")]})
        asyncio.run(_pipeline(search, reranker).start("the original question").collect())
        assert reranker.calls == [(["a"], "the original question")]

    def test_run_can_only_be_streamed_once(self):
        run = _pipeline(FakeSearch({})).start("question")
        asyncio.run(run.collect())
        with pytest.raises(RuntimeError):
            asyncio.run(run.collect())

    def test_context_cap_applied(self):
        search = FakeSearch({"q1": [_hit("a", "x" * 100), _hit("b", "y" * 100)]})
        run = _pipeline(search, max_context_chars=120).start("question")
        asyncio.run(run.collect())
        assert len(run.context) == 120
        assert run.context.startswith("x" * 100)


# ---------------------------------------------------------------------------
# Fan-out / fan-in
# ---------------------------------------------------------------------------


class TestRetrievalFanOut:

    def test_fan_in_follows_query_order_not_completion_order(self):
        search = FakeSearch(
            {
                "q1": [_hit("dup", "from q1"), _hit("a")],
                "q2": [_hit("b"), _hit("dup", "from q2")],
                "q3": [_hit("dup", "from q3"), _hit("c")],
            },
            delays={"q1": 0.05, "q2": 0.02, "q3": 0.0},
        )
        run = _pipeline(search).start("question")
        asyncio.run(run.collect())
        assert search.completed == ["q3", "q2", "q1"]
        assert list(run.candidates) == ["dup", "a", "b", "c"]
        assert run.candidates["dup"].content == "from q1"

    def test_searches_run_concurrently(self):
        search = FakeSearch({}, delays={"q1": 0.2, "q2": 0.2, "q3": 0.2})

        async def timed():
            loop = asyncio.get_running_loop()
            start = loop.time()
            await _pipeline(search).start("question").collect()
            return loop.time() - start

        assert asyncio.run(timed()) < 0.5

    def test_one_failed_search_fails_request_and_cancels_siblings(self):
        search = FakeSearch({}, delays={"q1": 1.0, "q3": 1.0}, fail_on="q2")
        llm = ContextEchoLLM()
        run = _pipeline(search, answer_llm=llm).start("question")
        received, exc = _drain(run)
        assert isinstance(exc, RetrievalError)
        assert "HTTP 503" in str(exc)
        assert received == []
        assert run.state is PipelineState.FAILED
        assert run.error is exc
        assert sorted(search.cancelled) == ["q1", "q3"]
        assert llm.prompts == []

    def test_isolated_failure_degrades_recall(self, caplog):
        search = FakeSearch({"q1": [_hit("a")], "q3": [_hit("c")]}, fail_on="q2")
        run = _pipeline(search, isolate_search_failures=True).start("question")
        with caplog.at_level(logging.WARNING, logger="unity_docs_rag.query.pipeline"):
            answer = asyncio.run(run.collect())
        assert answer == "The answer."
        assert list(run.candidates) == ["a", "c"]
        assert run.state is PipelineState.COMPLETED
        assert any("continuing without it" in m for m in caplog.messages)

    def test_isolated_malformed_row_degrades_recall(self):
        def handler(request: httpx.Request) -> httpx.Response:
            query = json.loads(request.content)["query_text"]
            if query == "q2":
                return httpx.Response(200, json=[{"id": 1, "content": "x", "metadata": "oops"}])
            return httpx.Response(200, json=[{"id": query, "content": f"passage {query}"}])

        search = HybridSearchClient(
            StaticEmbeddings(), "https://db.example.co", "service-key",
            transport=httpx.MockTransport(handler),
        )
        run = _pipeline(search, isolate_search_failures=True).start("question")
        answer = asyncio.run(run.collect())
        assert answer == "The answer."
        assert list(run.candidates) == ["q1", "q3"]
        assert run.state is PipelineState.COMPLETED

    def test_malformed_row_fails_request_without_isolation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"id": 1, "content": "x", "score": "n/a"}])

        search = HybridSearchClient(
            StaticEmbeddings(), "https://db.example.co", "service-key",
            transport=httpx.MockTransport(handler),
        )
        run = _pipeline(search).start("question")
        _, exc = _drain(run)
        assert isinstance(exc, RetrievalError)
        assert run.state is PipelineState.FAILED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class _FailingLLM(FakeListLLM):
    async def _acall(self, *args, **kwargs) -> str:
        raise ConnectionError("401 Unauthorized")


class TestPipelineFailures:

    def test_expansion_failure_is_fatal_without_fallback(self):
        search = FakeSearch({})
        pipeline = _pipeline(search)
        pipeline.expander = QueryExpander(_FailingLLM(responses=["x"]), load_expansion_prompt())
        run = pipeline.start("question")
        received, exc = _drain(run)
        assert isinstance(exc, ExpansionError)
        assert exc.stage == "expanding"
        assert search.calls == []
        assert run.state is PipelineState.FAILED

    def test_rerank_failure_is_fatal(self):
        reranker = FakeReranker(error=RerankError("Rerank returned HTTP 500: boom"))
        llm = ContextEchoLLM()
        run = _pipeline(FakeSearch({"q1": [_hit("a")]}), reranker, answer_llm=llm).start("q")
        received, exc = _drain(run)
        assert isinstance(exc, RerankError)
        assert received == []
        assert llm.prompts == []
        assert run.state is PipelineState.FAILED

    def test_unexpected_error_is_wrapped_with_stage(self):
        reranker = FakeReranker(error=ValueError("bad payload"))
        run = _pipeline(FakeSearch({"q1": [_hit("a")]}), reranker).start("q")
        _, exc = _drain(run)
        assert type(exc) is RAGError
        assert exc.stage == "reranking"
        assert isinstance(exc.__cause__, ValueError)
        assert exc.to_dict() == {"error": "Unexpected error: bad payload", "stage": "reranking"}

    def test_generation_failure_after_streaming_started(self):
        llm = FakeStreamingListLLM(responses=["partial answer"], error_on_chunk_number=4)
        run = _pipeline(FakeSearch({"q1": [_hit("a")]}), answer_llm=llm).start("q")
        received, exc = _drain(run)
        assert received == ["p", "a", "r", "t"]
        assert isinstance(exc, GenerationError)
        assert run.state is PipelineState.FAILED

    def test_cancellation_closes_the_run(self):
        run = _pipeline(FakeSearch({"q1": [_hit("a")]})).start("q")

        async def take_one():
            stream = run.stream()
            first = await anext(stream)
            await stream.aclose()
            return first

        assert asyncio.run(take_one()) == "T"
        assert run.state is PipelineState.FAILED
        assert run.error is None


# ---------------------------------------------------------------------------
# Empty retrieval
# ---------------------------------------------------------------------------


class TestEmptyRetrieval:

    def test_no_hits_gives_empty_context_and_abstain_answer(self):
        reranker = FakeReranker()
        llm = ContextEchoLLM()
        run = _pipeline(FakeSearch({}), reranker, answer_llm=llm).start(QUESTION)
        answer = asyncio.run(run.collect())
        assert run.candidates == {}
        assert run.ranked == []
        assert run.context == ""
        assert ABSTAIN_PHRASE in answer
        assert len(llm.prompts) == 1
        assert run.state is PipelineState.COMPLETED

    def test_no_queries_still_answers(self):
        search = FakeSearch({})
        llm = ContextEchoLLM()
        run = _pipeline(search, expansion="\n \n", answer_llm=llm).start(QUESTION)
        answer = asyncio.run(run.collect())
        assert run.queries == []
        assert search.calls == []
        assert ABSTAIN_PHRASE in answer

    def test_real_reranker_not_called_for_empty_candidates(self):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"results": []})

        reranker = Reranker("https://rerank.example.com/v2/rerank", "key",
                            transport=httpx.MockTransport(handler))
        run = _pipeline(FakeSearch({}), reranker).start(QUESTION)
        asyncio.run(run.collect())
        assert calls == []


# ---------------------------------------------------------------------------
# End-to-end: real clients against mocked HTTP services
# ---------------------------------------------------------------------------


def _search_rows(with_translate: bool) -> dict[str, list[dict]]:
    q1, q2, q3 = EXPANSION.split("\n")
    rows = {
        q1: [f"m{i}" for i in range(10)],
        q2: [f"m{i}" for i in range(6, 12)] + [f"t{i}" for i in range(4)],
        q3: [f"m{i}" for i in range(8, 14)] + [f"t{i}" for i in range(2, 6)],
    }
    contents = {f"m{i}": f"Manual page {i} about the Unity editor." for i in range(14)}
    contents.update({f"t{i}": f"Scripting page {i} on Rigidbody physics." for i in range(6)})
    if with_translate:
        contents["t1"] = TRANSLATE_PASSAGE
    return {
        q: [
            {"id": i, "content": contents[i], "metadata": {"title": i, "url": f"https://docs/{i}"}}
            for i in ids
        ]
        for q, ids in rows.items()
    }


def _e2e_pipeline(with_translate: bool, rerank_requests: list, llm: ContextEchoLLM) -> RAGPipeline:
    rows = _search_rows(with_translate)

    def search_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=rows[json.loads(request.content)["query_text"]])

    def rerank_handler(request: httpx.Request) -> httpx.Response:
        rerank_requests.append(request)
        body = json.loads(request.content)
        scored = [
            (i, (1.0 if "transform" in doc.lower() else 0.5) - i / 1000)
            for i, doc in enumerate(body["documents"])
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return httpx.Response(200, json={"results": [
            {"index": i, "relevance_score": s} for i, s in scored[: body["top_n"]]
        ]})

    return RAGPipeline(
        expander=QueryExpander(FakeListLLM(responses=[EXPANSION]), load_expansion_prompt()),
        search_client=HybridSearchClient(
            StaticEmbeddings(), "https://db.example.co", "service-key",
            transport=httpx.MockTransport(search_handler),
        ),
        reranker=Reranker(
            "https://rerank.example.com/v2/rerank", "cohere-key",
            transport=httpx.MockTransport(rerank_handler),
        ),
        answer_streamer=AnswerStreamer(llm, load_answer_prompt()),
    )


class TestUnityScenario:

    def test_translate_passage_selected_and_cited(self):
        rerank_requests: list[httpx.Request] = []
        llm = ContextEchoLLM()
        run = _e2e_pipeline(True, rerank_requests, llm).start(QUESTION)
        fragments, exc = _drain(run)

        assert exc is None
        assert len(run.queries) == 3
        assert len(run.candidates) == 20
        assert len(run.ranked) == 5
        assert run.ranked[0].hit.content == TRANSLATE_PASSAGE
        assert all(a.score >= b.score for a, b in zip(run.ranked, run.ranked[1:]))
        assert run.context.count("\n\n---\n\n") == 4
        assert json.loads(rerank_requests[0].content)["query"] == QUESTION
        assert len(fragments) > 1
        answer = "".join(fragments)
        assert "transform.Translate" in answer
        assert ABSTAIN_PHRASE not in answer
        assert TRANSLATE_PASSAGE in llm.prompts[0]
        assert QUESTION in llm.prompts[0]
        assert run.state is PipelineState.COMPLETED

    def test_abstains_when_no_translate_passage(self):
        llm = ContextEchoLLM()
        run = _e2e_pipeline(False, [], llm).start(QUESTION)
        answer = asyncio.run(run.collect())
        assert len(run.ranked) == 5
        assert "transform.Translate" not in answer
        assert ABSTAIN_PHRASE in answer


# ---------------------------------------------------------------------------
# build_pipeline
# ---------------------------------------------------------------------------


class TestBuildPipeline:

    def _settings(self) -> ServiceSettings:
        return ServiceSettings(
            supabase_url="https://db.example.co",
            supabase_key="service-key",
            rerank_api_url="https://rerank.example.com/v2/rerank",
            rerank_api_key="cohere-key",
            llm_provider="endpoint",
            hf_token="hf-token",
        )

    def test_wires_components_from_settings(self):
        llm = FakeListLLM(responses=["x"])
        with patch(
            "unity_docs_rag.query.pipeline.load_service_settings", return_value=self._settings()
        ), patch(
            "unity_docs_rag.query.pipeline.create_llm", return_value=llm
        ) as create_llm, patch(
            "unity_docs_rag.index.get_embeddings", return_value=StaticEmbeddings()
        ):
            pipeline = build_pipeline()
        create_llm.assert_called_once_with("endpoint", "hf-token")
        assert pipeline.search_client.rpc_url == "https://db.example.co/rest/v1/rpc/hybrid_search"
        assert pipeline.reranker.top_k == 5
        assert pipeline.reranker.api_url == "https://rerank.example.com/v2/rerank"
        assert pipeline.expander.max_queries == 3
        assert pipeline.isolate_search_failures is False

    def test_missing_configuration_is_fatal(self):
        create_llm = MagicMock()
        with patch(
            "unity_docs_rag.query.pipeline.load_service_settings",
            side_effect=ConfigurationError("Missing required configuration: SUPABASE_URL"),
        ), patch("unity_docs_rag.query.pipeline.create_llm", create_llm):
            with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
                build_pipeline()
        create_llm.assert_not_called()
