#!/usr/bin/env python
"""
Interactive chat client for a running relay.

- requests a session over HTTP, then keeps a WebSocket open (reconnecting on drops)
- each line typed is sent as a chat message; the assistant reply is printed once the turn is done
- tool calls requested by the model are executed against the configured tool endpoints
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from chatrelay.client import ChatClient, ClientEngine, ToolBridge
from chatrelay.logging_config import setup_logging
from chatrelay.settings import settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Chat with the relay from the terminal.",
    )
    parser.add_argument(
        "url",
        nargs="?",
        default="http://localhost:8000",
        help="Relay base URL, e.g. http://localhost:8000",
    )
    parser.add_argument("--model", help="Model override sent with every message")
    parser.add_argument("--system", help="System prompt override sent with every message")
    parser.add_argument(
        "--search-url",
        default=settings.github_search_url,
        help="Endpoint of the github_search tool",
    )
    parser.add_argument(
        "--file-url",
        default=settings.github_file_url,
        help="Endpoint of the github_get_file tool",
    )
    return parser.parse_args()


async def chat(args: argparse.Namespace) -> None:
    turn_finished = asyncio.Event()

    def on_turn_complete(text: str) -> None:
        print(f"Assistant: {text}" if text else "Assistant: (no text)")
        turn_finished.set()

    def on_error(payload: dict) -> None:
        print(f"ERROR: {payload.get('message') or 'unknown'}")
        turn_finished.set()

    bridge = ToolBridge(
        {"github_search": args.search_url, "github_get_file": args.file_url}
    )
    engine = ClientEngine(bridge, on_turn_complete=on_turn_complete, on_error=on_error)
    client = ChatClient(args.url, engine)
    runner = asyncio.create_task(client.run())

    print("Type a message and press enter; /quit to exit.")
    try:
        while True:
            line = await asyncio.to_thread(input, "You: ")
            text = line.strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break

            turn_finished.clear()
            await engine.send_message(text, model=args.model, system=args.system)
            await turn_finished.wait()
            if engine.last_usage:
                print(
                    f"(tokens: {engine.last_usage.get('session_total')}"
                    f"/{engine.last_usage.get('session_limit')})"
                )
    except (EOFError, KeyboardInterrupt):
        print()
    finally:
        await client.close()
        runner.cancel()
        engine.close()
        await bridge.aclose()


def main() -> None:
    args = parse_args()
    setup_logging()
    try:
        asyncio.run(chat(args))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
