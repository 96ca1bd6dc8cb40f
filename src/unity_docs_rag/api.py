"""HTTP chat endpoint streaming answers in the AI SDK data-stream format.

Each line of the response body is ``<code>:<json>``: ``0`` carries a text
fragment, ``3`` an error raised after streaming began, and ``d`` the finish
message. Failures before the first fragment are returned as a non-2xx JSON
body ``{"error": ..., "stage": ...}`` instead.

Launch:
    uvicorn unity_docs_rag.api:app
"""
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from functools import lru_cache

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from unity_docs_rag.errors import RAGError
from unity_docs_rag.query.pipeline import RAGPipeline, build_pipeline

logger = logging.getLogger(__name__)

FINISH_PART = 'd:{"finishReason":"stop"}\n'


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = []


def latest_user_message(messages: list[ChatMessage]) -> str | None:
    """Return the content of the last user message, or None if there is none or it is blank.

    Earlier user messages are never used in place of a blank latest one.
    """
    for message in reversed(messages):
        if message.role == "user":
            return message.content if message.content.strip() else None
    return None


@lru_cache(maxsize=1)
def get_pipeline() -> RAGPipeline:
    return build_pipeline()


def _text_part(text: str) -> str:
    return f"0:{json.dumps(text)}\n"


def _error_part(message: str) -> str:
    return f"3:{json.dumps(message)}\n"


async def _data_stream(first: str | None, fragments: AsyncIterator[str]) -> AsyncIterator[str]:
    async with aclosing(fragments):
        if first is not None:
            yield _text_part(first)
        try:
            async for fragment in fragments:
                yield _text_part(fragment)
        except RAGError as exc:
            logger.error("Answer stream failed during %s: %s", exc.stage, exc)
            yield _error_part(str(exc))
            return
    yield FINISH_PART


app = FastAPI(title="Unity Docs RAG", version="0.1.0")


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    logger.error("Request failed during %s: %s", exc.stage, exc)
    return JSONResponse(exc.to_dict(), status_code=500)


@app.post("/api/chat")
async def chat(req: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
    question = latest_user_message(req.messages)
    if question is None:
        return JSONResponse(
            {"error": "Request has no user message", "stage": "received"},
            status_code=400,
        )

    run = pipeline.start(question)
    fragments = run.stream()
    # Run up to the first fragment here so that earlier failures still get
    # a proper status code.
    try:
        first = await anext(fragments)
    except StopAsyncIteration:
        first = None
    return StreamingResponse(
        _data_stream(first, fragments),
        media_type="text/plain; charset=utf-8",
        headers={"x-vercel-ai-data-stream": "v1"},
    )
