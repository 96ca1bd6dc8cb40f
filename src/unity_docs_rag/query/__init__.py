"""Retrieval and answer pipeline.

Submodules:
    expand   : LLM query expansion (one question, up to three search queries).
    search   : Hybrid search client (query embedding + fused keyword/semantic RPC).
    aggregate: First-seen deduplication of per-query results.
    rerank   : Cohere-compatible reranking against the original question.
    context  : Context assembly from reranked passages.
    chain    : LLM factory and streaming, context-constrained answer generation.
    pipeline : Per-request orchestration and state machine.
"""

from unity_docs_rag.query.pipeline import PipelineRun, PipelineState, RAGPipeline, build_pipeline

__all__ = ["PipelineRun", "PipelineState", "RAGPipeline", "build_pipeline"]
