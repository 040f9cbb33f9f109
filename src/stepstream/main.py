#!/usr/bin/env python3
"""CLI demo: stream one prompt through a Run and log the step events."""

import argparse
import sys

from langchain_core.messages import HumanMessage

from .config import config
from .events import GraphEvent, StreamEvent
from .exceptions import UnsupportedProviderError
from .llm import get_chat_model
from .logging_config import get_logger, setup_logging
from .run import Run, RunResult, summarize
from .testing.mock_llm import create_mock_llm

logger = get_logger(__name__)


def _make_stream_logging_subscriber(show_thinking: bool = False) -> dict:
    """Handlers that log text, thinking and tool activity at INFO, one line per step."""
    buffers: dict[str, list[str]] = {}
    kinds: dict[str, str] = {}

    def on_step(event: StreamEvent) -> None:
        step = event.data
        buffers[step.id] = []
        kinds[step.id] = step.type.value
        logger.debug("Step %d (%s) created", step.index, step.type.value)

    def on_text(event: StreamEvent) -> None:
        buffers.setdefault(event.data.step_id, []).append(event.data.text)

    def on_thinking(event: StreamEvent) -> None:
        if show_thinking:
            buffers.setdefault(event.data.step_id, []).append(event.data.text)

    def on_tool_chunk(event: StreamEvent) -> None:
        for chunk in event.data.tool_call_chunks:
            buffers.setdefault(event.data.step_id, []).append(chunk.get("args") or "")

    def on_close(event: StreamEvent) -> None:
        step = event.data
        text = "".join(buffers.pop(step.id, []))
        if text.strip():
            logger.info("Model [%s] %s: %s", step.index, kinds.get(step.id, "text"), text)

    def on_tool_end(event: StreamEvent) -> None:
        result = event.data
        logger.info(
            "Tool %s%s: %s",
            result.tool_call.get("name"),
            " (error)" if result.is_error else "",
            result.tool_call.get("output"),
        )

    return {
        GraphEvent.RUN_STEP_CREATED: on_step,
        GraphEvent.MESSAGE_DELTA: on_text,
        GraphEvent.REASONING_DELTA: on_thinking,
        GraphEvent.TOOL_CALL_CHUNK: on_tool_chunk,
        GraphEvent.RUN_STEP_CLOSED: on_close,
        GraphEvent.TOOL_END: on_tool_end,
    }


def _fake_response(prompt: str) -> str:
    return (
        f"<think>The user asked: {prompt}</think>"
        f"This is a scripted answer to: {prompt}\n"
        "```python\nprint('hello')\n```\nDone."
    )


def run_prompt(
    prompt: str,
    provider: str | None = None,
    model: str | None = None,
    threshold: int | None = None,
    show_thinking: bool = False,
    fake: bool = False,
) -> RunResult:
    """Stream one prompt and return the run result."""
    provider = provider or config["llm"]["provider"]
    if fake:
        llm = create_mock_llm([_fake_response(prompt)])
    else:
        overrides = {"model": model} if model else {}
        llm = get_chat_model(provider, **overrides)
    run = Run(
        provider=provider,
        custom_handlers=_make_stream_logging_subscriber(show_thinking),
        block_threshold=threshold,
    )
    return run.stream_chunks(llm.stream([HumanMessage(content=prompt)]))


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Stream a model response as structured step events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stepstream --fake "Why is the sky blue?"
  stepstream --provider deepseek --model deepseek-reasoner --show-thinking "Prove 1+1=2"
        """,
    )
    parser.add_argument("prompt", help="Prompt to send to the model")
    parser.add_argument("--provider", "-p", default=None, help="LLM provider (default from config)")
    parser.add_argument("--model", "-m", default=None, help="Model name (default from config)")
    parser.add_argument(
        "--threshold", "-t",
        type=int,
        default=None,
        help="Minimum buffered characters per delta (default from config)",
    )
    parser.add_argument("--show-thinking", action="store_true", help="Log reasoning steps too")
    parser.add_argument("--fake", action="store_true", help="Use a scripted fake model instead of a provider")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    log_level = "DEBUG" if args.verbose else config.get("log_level", "INFO")
    setup_logging(level=log_level, log_file=config.get("log_file"))

    try:
        result = run_prompt(
            args.prompt,
            provider=args.provider,
            model=args.model,
            threshold=args.threshold,
            show_thinking=args.show_thinking,
            fake=args.fake,
        )
    except UnsupportedProviderError as e:
        logger.error("%s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl-C)")
        sys.exit(1)

    logger.info("%s", summarize(result))
    sys.exit(0 if result.ok else 2)


if __name__ == "__main__":
    main()
