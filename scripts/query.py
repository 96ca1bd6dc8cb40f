#!/usr/bin/env python3
"""Interactive REPL for Unity docs RAG. Streams each answer, then prints the passages it was grounded on.

Usage:
  python scripts/query.py
  python scripts/query.py --show-queries
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from unity_docs_rag.errors import ConfigurationError, RAGError
from unity_docs_rag.query.pipeline import PipelineRun, RAGPipeline, build_pipeline

try:
    import readline

    _HISTORY_PATH = Path.home() / ".unity_docs_rag_query_history"
    _READLINE_AVAILABLE = True
except ImportError:
    _READLINE_AVAILABLE = False
    _HISTORY_PATH = None

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Unity docs RAG query REPL")
    parser.add_argument(
        "--show-queries",
        action="store_true",
        help="Print the expanded search queries before each answer",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log pipeline progress (INFO)"
    )
    args = parser.parse_args()
    if args.verbose:
        logging.getLogger("unity_docs_rag").setLevel(logging.INFO)

    try:
        pipeline = build_pipeline()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if _READLINE_AVAILABLE and _HISTORY_PATH is not None:
        try:
            readline.read_history_file(_HISTORY_PATH)
        except OSError:
            pass
        try:
            readline.set_history_length(500)
        except (AttributeError, TypeError):
            pass

    print("Unity docs RAG query (blank line to quit)")
    print("---")

    try:
        _repl_loop(pipeline, show_queries=args.show_queries)
    finally:
        if _READLINE_AVAILABLE and _HISTORY_PATH is not None:
            try:
                readline.write_history_file(_HISTORY_PATH)
            except OSError:
                pass

    print("Bye.")
    return 0


async def _stream_answer(run: PipelineRun) -> None:
    async for fragment in run.stream():
        print(fragment, end="", flush=True)
    print()


def _print_sources(run: PipelineRun, show_queries: bool) -> None:
    if show_queries:
        print("Queries:")
        for q in run.queries:
            print(f"  - {q}")
    print("Sources:")
    for r in run.ranked:
        parts = [f"  [{r.rank + 1}]", f"score={r.score:.3f}"]
        if r.hit.title:
            parts.append(f"title={r.hit.title}")
        if r.hit.url:
            parts.append(f"url={r.hit.url}")
        print(" ".join(parts))


def _repl_loop(pipeline: RAGPipeline, show_queries: bool = False) -> None:
    while True:
        try:
            question = input("Question (blank to quit): ").strip()
        except EOFError:
            break
        if not question:
            break
        run = pipeline.start(question)
        print()
        try:
            asyncio.run(_stream_answer(run))
        except RAGError as e:
            print(f"\nError ({e.stage}): {e}", file=sys.stderr)
            continue
        except KeyboardInterrupt:
            print("\n(interrupted)")
            continue
        print()
        _print_sources(run, show_queries)
        print("---")


if __name__ == "__main__":
    sys.exit(main())
