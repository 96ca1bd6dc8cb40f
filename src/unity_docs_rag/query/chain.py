"""Answer generation: context-constrained prompt streamed from a Hugging Face LLM."""
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from langchain_core.language_models import BaseLLM
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import PromptTemplate

from unity_docs_rag.config import (
    GENERATION_TIMEOUT,
    LLM_ENDPOINT_URL,
    LLM_MAX_NEW_TOKENS,
    LLM_REPETITION_PENALTY,
    LLM_REPO_ID,
)
from unity_docs_rag.errors import GenerationError

logger = logging.getLogger(__name__)


def create_llm(provider: str, hf_token: str | None = None) -> BaseLLM:
    """Create the text-completion model used for both expansion and answers.

    ``endpoint`` streams from a Hugging Face Inference endpoint (a dedicated
    LLM_ENDPOINT_URL, e.g. a TGI server, or the serverless LLM_REPO_ID);
    ``local`` runs LLM_REPO_ID in-process through a transformers pipeline.
    """
    if provider == "local":
        from langchain_huggingface import HuggingFacePipeline
        return HuggingFacePipeline.from_model_id(
            model_id=LLM_REPO_ID,
            task="text-generation",
            pipeline_kwargs=dict(
                max_new_tokens=LLM_MAX_NEW_TOKENS,
                do_sample=False,
                repetition_penalty=LLM_REPETITION_PENALTY,
                return_full_text=False,
            ),
        )

    from langchain_huggingface import HuggingFaceEndpoint
    target: dict[str, Any] = (
        {"endpoint_url": LLM_ENDPOINT_URL} if LLM_ENDPOINT_URL else {"repo_id": LLM_REPO_ID}
    )
    return HuggingFaceEndpoint(
        **target,
        huggingfacehub_api_token=hf_token,
        max_new_tokens=LLM_MAX_NEW_TOKENS,
        do_sample=False,
        temperature=None,
        repetition_penalty=LLM_REPETITION_PENALTY,
        streaming=True,
    )


class AnswerStreamer:
    """Stream an answer grounded in the assembled context, fragment by fragment."""

    def __init__(
        self,
        llm: Any,
        prompt: PromptTemplate,
        timeout: float = GENERATION_TIMEOUT,
    ) -> None:
        self._chain = prompt | llm | StrOutputParser()
        self.timeout = timeout

    async def stream(self, question: str, context: str) -> AsyncIterator[str]:
        """Yield non-empty fragments as the model produces them.

        ``timeout`` bounds the wait for each fragment. Closing this iterator
        closes the model stream, which aborts the generation request.
        """
        async with aclosing(
            self._chain.astream({"context": context, "question": question})
        ) as fragments:
            while True:
                try:
                    async with asyncio.timeout(self.timeout):
                        fragment = await anext(fragments)
                except StopAsyncIteration:
                    return
                except TimeoutError as exc:
                    raise GenerationError(
                        f"No output from the answer model for {self.timeout:g}s"
                    ) from exc
                except Exception as exc:
                    raise GenerationError(f"Answer generation failed: {exc}") from exc
                if fragment:
                    yield fragment
