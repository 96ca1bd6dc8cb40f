"""Prompt templates for query expansion and answer generation.

Both templates are LangChain ``PromptTemplate`` objects whose placeholders
are checked when the pipeline is built, so a malformed override fails at
startup instead of producing a broken prompt mid-request.
"""
from pathlib import Path

from langchain_core.prompts import PromptTemplate

from unity_docs_rag.errors import ConfigurationError

ABSTAIN_PHRASE = "I don't know"

EXPANSION_TEMPLATE = """You are a specialized Unity AI assistant.
Your task is to generate 3 different search queries for the Unity Documentation based on the user's question.

RULES:
1. One query should be the exact user question.
2. One query should focus on specific Unity classes or keywords.
3. One query should be a "how-to" phrasing.
4. Output ONLY the 3 queries separated by newlines. No numbering.

User Question: {question}

Queries:"""

ANSWER_TEMPLATE = (
    """You are a specialized Unity Documentation Assistant.

STRICT RULES:
1. Use ONLY the provided context.
2. If the answer is not in the context, say \""""
    + ABSTAIN_PHRASE
    + """\".
3. If the context contains code snippets (C#), prioritize showing them.

Context:
{context}

Question:
{question}

Answer:"""
)

EXPANSION_VARIABLES = frozenset({"question"})
ANSWER_VARIABLES = frozenset({"context", "question"})


def build_prompt(template: str, expected: frozenset[str], name: str) -> PromptTemplate:
    """Parse *template* and require its placeholders to be exactly *expected*."""
    try:
        prompt = PromptTemplate.from_template(template)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {name} prompt template: {exc}") from exc
    found = set(prompt.input_variables)
    if found != expected:
        raise ConfigurationError(
            f"Invalid {name} prompt template: expected placeholders "
            f"{sorted(expected)}, found {sorted(found)}"
        )
    return prompt


def _read_override(path: Path, name: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {name} prompt file {path}: {exc}") from exc


def load_expansion_prompt(path: Path | None = None) -> PromptTemplate:
    """Expansion prompt with a single ``{question}`` placeholder."""
    template = _read_override(path, "expansion") if path else EXPANSION_TEMPLATE
    return build_prompt(template, EXPANSION_VARIABLES, "expansion")


def load_answer_prompt(path: Path | None = None) -> PromptTemplate:
    """Answer prompt with ``{context}`` and ``{question}`` placeholders."""
    template = _read_override(path, "answer") if path else ANSWER_TEMPLATE
    return build_prompt(template, ANSWER_VARIABLES, "answer")
