"""Command-line entry point: run one turn and print notifications as JSON lines.

    agent-runtime "Summarise the README"
    python -m agent_runtime.main --model gpt-4o --web-search "What changed in 3.13?"

Provider settings come from AGENT_RUNTIME_* environment variables (see
agent_runtime.config). The exit status is 0 on success, 1 when the turn fails.
"""

import argparse
import asyncio
import json
import logging
import sys

from agent_runtime.bridge import WebSocketToolBridge
from agent_runtime.client import ResponsesClient
from agent_runtime.config import RuntimeSettings
from agent_runtime.errors import ModelClientError
from agent_runtime.schemas.notifications import Notification
from agent_runtime.tools import ToolRegistry, ToolsConfig
from agent_runtime.turn import TurnConfig, TurnExecutor

logger = logging.getLogger(__name__)


def user_message(text: str) -> dict:
    return {
        "type": "message",
        "role": "user",
        "content": [{"type": "input_text", "text": text}],
    }


def print_notification(notification: Notification) -> None:
    print(json.dumps(notification.model_dump(mode="json")), flush=True)


async def run(prompt: str, settings: RuntimeSettings, instructions: str | None = None) -> int:
    """Run a single turn for `prompt`. Returns the process exit status."""
    client = ResponsesClient(
        api_key=settings.api_key,
        model=settings.model,
        provider=settings.provider_info(),
        organization=settings.organization,
        retry_config=settings.retry_config(),
        stream_config=settings.stream_config(),
        timeout=settings.request_timeout_seconds,
    )
    bridge = WebSocketToolBridge(settings.bridge_url) if settings.bridge_url else None
    executor = TurnExecutor(
        client,
        registry=ToolRegistry(),
        tools_config=ToolsConfig(
            disabled=settings.disabled_tools,
            web_search=settings.enable_web_search,
            bridge_tools=bridge is not None,
        ),
        bridge=bridge,
        sink=print_notification,
        config=TurnConfig.from_retry_config(settings.retry_config()),
        base_instructions_override=instructions,
    )
    try:
        result = await executor.run_turn([user_message(prompt)])
    except ModelClientError as exc:
        logger.error("Turn failed (%s): %s", exc.kind.value, exc.message)
        return 1
    finally:
        await client.aclose()

    logger.info(
        "Turn %s completed with %d items", result.response_id, len(result.processed_items)
    )
    return 0


def cli(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run one agent turn against the Responses API")
    parser.add_argument("prompt", help="User message for the turn")
    parser.add_argument("--model", help="Model name, overrides AGENT_RUNTIME_MODEL")
    parser.add_argument("--instructions", help="Replace the model's base instructions")
    parser.add_argument("--web-search", action="store_true", help="Offer the web_search tool")
    args = parser.parse_args(argv)

    overrides: dict = {}
    if args.model:
        overrides["model"] = args.model
    if args.web_search:
        overrides["enable_web_search"] = True
    settings = RuntimeSettings(**overrides)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(asyncio.run(run(args.prompt, settings, instructions=args.instructions)))


if __name__ == "__main__":
    cli()
