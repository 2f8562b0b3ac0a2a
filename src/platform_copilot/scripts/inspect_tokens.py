"""CLI helper to inspect how a prompt spends a model's token budget."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from ..ai import prompts
from ..ai.client import DEFAULT_MODEL, TokenCounterRegistry, normalize_model_name
from ..ai.orchestration.prompt_assembler import PromptAssembler


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect token counts for a prompt.")
    parser.add_argument("--model", default=DEFAULT_MODEL, help="Model or deployment name used for counting.")
    parser.add_argument(
        "--file",
        type=Path,
        help="Optional file containing the prompt. Reads stdin when omitted and --text not provided.",
    )
    parser.add_argument("--text", help="Inline prompt text. Overrides --file when provided.")
    parser.add_argument(
        "--estimate-only",
        action="store_true",
        help="Skip tiktoken lookups and use the byte-length estimator.",
    )
    parser.add_argument(
        "--with-system-prompt",
        action="store_true",
        help="Also attribute tokens for the default system prompt and formatting overhead.",
    )
    args = parser.parse_args(argv)

    payload = _load_text(args.text, args.file)
    if not payload:
        print("No input text provided.", file=sys.stderr)
        return 1

    registry = TokenCounterRegistry(precise=not args.estimate_only)
    tokens = registry.count_tokens(payload, args.model)
    window = registry.max_context_window(args.model)

    print(f"model: {args.model}")
    print(f"family: {normalize_model_name(args.model)}")
    print(f"characters: {len(payload)}")
    print(f"tokens: {tokens}")
    print(f"tokens (estimate): {registry.estimate(payload)}")
    print(f"context window: {window:,} ({tokens / window:.2%} used)")
    print(f"max completion: {registry.max_completion_tokens(args.model):,}")

    if args.with_system_prompt:
        assembled = PromptAssembler(registry).assemble(
            prompts.base_system_prompt(),
            None,
            None,
            payload,
            model_name=args.model,
        )
        print(f"breakdown: {assembled.metrics.compact_summary()}")
    return 0


def _load_text(inline: str | None, path: Path | None) -> str:
    if inline:
        return inline
    if path:
        return path.read_text(encoding="utf-8")
    data = sys.stdin.read()
    return data.strip()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
