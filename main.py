"""UltraSearch - search-augmented chat

Simple CLI for running a single chat turn.
"""

import argparse
import asyncio
import uuid

from ultrasearch.config import settings
from ultrasearch.context import AppContext
from ultrasearch.models import annotations as ann
from ultrasearch.models.messages import Message
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.pipeline import ChatPipeline, ChatTurn


def _print_annotation(data: dict) -> None:
    kind = data.get("type")
    body = data.get("data") or {}
    if kind == ann.STAGE_HEADER:
        print(f"\n[~] {body.get('title', '')}")
    elif kind == ann.STAGE_RESULT:
        print(f"  [+] {body.get('title', '')}")
    elif kind == ann.TOOL_CALL and body.get("state") == "call":
        print(f"\n[*] {body.get('toolName')} {body.get('args', '')}")
    elif kind == ann.RELATED_QUESTIONS and body.get("items"):
        print(f"\n\n[?] Related:")
        for item in body["items"]:
            print(f"  - {item.get('query', '')}")


async def run_chat(query: str, model: str | None = None, search: bool = True, ultra: bool = False):
    """Run one chat turn for the given query."""
    print(f"Query: {query}")
    print("-" * 50)

    context = await AppContext.create(settings)
    channel = StreamChannel(max_size=settings.channel_max_size)
    turn = ChatTurn(
        chat_id=uuid.uuid4().hex[:16],
        messages=[Message(role="user", content=query)],
        model_key=model or settings.default_model,
        search_mode=search,
        ultra_mode=ultra,
    )
    task = asyncio.create_task(ChatPipeline(context).run(turn, channel))
    try:
        async for event in channel:
            event_type = event.event.value
            if event_type == "text":
                print(event.data.get("text", ""), end="", flush=True)
            elif event_type in ("annotation", "data"):
                _print_annotation(event.data)
            elif event_type == "finish":
                print(f"\n\n[*] Done ({event.data.get('strategy')})")
            elif event_type == "error":
                print(f"\n[!] Error: {event.data.get('message', 'Unknown error')}")
        await asyncio.gather(task, return_exceptions=True)
    finally:
        await context.aclose()


def main():
    parser = argparse.ArgumentParser(description="UltraSearch chat")
    parser.add_argument("--query", "-q", required=True, help="Question to ask")
    parser.add_argument("--model", "-m", help="Model key, e.g. openai:gpt-4o-mini (default: from config)")
    parser.add_argument("--no-search", action="store_true", help="Disable search tools")
    parser.add_argument("--ultra", action="store_true", help="Run the plan/research/draft/critique pipeline")

    args = parser.parse_args()

    asyncio.run(run_chat(args.query, args.model, search=not args.no_search, ultra=args.ultra))


if __name__ == "__main__":
    main()
