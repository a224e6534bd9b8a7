"""Command line entry points: replay change events offline, or list a live inbox."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Iterable, List, TextIO

from .config import SyncConfig
from .events import ChangeEvent
from .http_backend import HttpBackend
from .inbox import ConversationSummary
from .memory_backend import InMemoryBackend
from .session import ChatSession
from .visibility import VIEW_ACTIVE, VIEW_ARCHIVED, VIEWS


def _summary_dict(row: ConversationSummary) -> dict:
    return {
        "conv_id": row.conv_id,
        "name": row.name,
        "text": row.text,
        "last_message_at": row.last_message_at_ms,
        "unread": row.unread,
        "last_is_read": row.last_is_read,
        "status": row.status_label,
    }


def _write_rows(rows: Iterable[ConversationSummary], output: TextIO) -> None:
    for row in rows:
        output.write(json.dumps(_summary_dict(row)) + "\n")


async def simulate(
    viewer_id: str, events: Iterable[ChangeEvent], output: TextIO, *, view: str = VIEW_ACTIVE
) -> List[ConversationSummary]:
    """Feed change events through a session for ``viewer_id`` and print its conversation list."""

    backend = InMemoryBackend()
    async with ChatSession(viewer_id, backend) as session:
        for event in events:
            backend.replay(event)
        await session.drain()
        rows = session.conversation_list(view)
        _write_rows(rows, output)
        if session.ingestion.dropped_events:
            output.write(json.dumps({"dropped_events": session.ingestion.dropped_events}) + "\n")
    return rows


async def fetch_inbox(config: SyncConfig, viewer_id: str, output: TextIO, *, view: str = VIEW_ACTIVE) -> List[ConversationSummary]:
    if not config.base_url or not config.session_token:
        raise ValueError("base url and session token are required")
    async with HttpBackend(config.base_url, config.session_token, timeout_s=config.request_timeout_s) as backend:
        async with ChatSession(viewer_id, backend, config) as session:
            rows = session.conversation_list(view)
    _write_rows(rows, output)
    return rows


def _read_events(handle: TextIO) -> List[ChangeEvent]:
    """Parse change events from a JSON array, a single JSON object, or JSON lines."""

    content = handle.read()
    if not content.strip():
        return []
    try:
        document = json.loads(content)
    except json.JSONDecodeError:
        items = []
        for number, line in enumerate(content.splitlines(), 1):
            if not line.strip():
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ValueError(f"line {number} is not valid JSON: {exc.msg}") from exc
    else:
        items = document if isinstance(document, list) else [document]

    events = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"change event {index} is not an object")
        events.append(ChangeEvent.from_dict(item))
    return events


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(prog="chatsync", description="Conversation sync engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay change events and print the conversation list")
    simulate_parser.add_argument("viewer", help="Viewer user id")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON change events; defaults to stdin",
    )
    simulate_parser.add_argument("--view", choices=VIEWS, default=VIEW_ACTIVE)

    inbox_parser = subparsers.add_parser("inbox", help="Fetch and print the conversation list from a server")
    inbox_parser.add_argument("viewer", help="Viewer user id")
    inbox_parser.add_argument("--base-url", default=None, help="Server base URL (CHATSYNC_BASE_URL)")
    inbox_parser.add_argument("--token", default=None, help="Session token (CHATSYNC_TOKEN)")
    inbox_parser.add_argument("--archived", action="store_true", help="Show the archived view")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        try:
            events = _read_events(args.file or sys.stdin)
        except ValueError as exc:
            parser.error(str(exc))
        asyncio.run(simulate(args.viewer, events, output, view=args.view))
        return 0

    config = SyncConfig.from_env()
    overrides = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.token:
        overrides["session_token"] = args.token
    if overrides:
        config = dataclasses.replace(config, **overrides)
    view = VIEW_ARCHIVED if args.archived else VIEW_ACTIVE
    try:
        asyncio.run(fetch_inbox(config, args.viewer, output, view=view))
    except ValueError as exc:
        parser.error(str(exc))
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
