"""Daybook CLI.

Commands:
  - ``daybook serve``                       HTTP + realtime audio server
  - ``daybook parse TEXT``                  print the extractor output as JSON
  - ``daybook memories export USER``        dump a user's memories
  - ``daybook memories import USER FILE``   load an export document
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from daybook import __version__
from daybook.config import Settings
from daybook.errors import DaybookError
from daybook.nlu.parser import IntentParser

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="daybook",
        description=f"Daybook v{__version__} - natural-language calendar assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  daybook serve --port 8000
  daybook parse "lunch with Alice tomorrow at 1pm"
  daybook parse "team sync next friday" --now 2024-03-11T09:00
  daybook memories export alice --out alice.json
  daybook memories import alice alice.json
""",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subs = parser.add_subparsers(dest="command")
    subs.required = True

    serve = subs.add_parser("serve", help="Run the HTTP API and audio bridge")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    parse_p = subs.add_parser("parse", help="Parse one utterance and print the result")
    parse_p.add_argument("text", help="Utterance to parse")
    parse_p.add_argument("--now", default=None, help="Reference time, ISO format")

    memories = subs.add_parser("memories", help="Export or import user memories")
    mem_subs = memories.add_subparsers(dest="memories_action")
    mem_subs.required = True
    export_p = mem_subs.add_parser("export", help="Write a user's memories as JSON")
    export_p.add_argument("user", help="User id")
    export_p.add_argument("--out", default=None, help="Output file (default: stdout)")
    import_p = mem_subs.add_parser("import", help="Load memories from an export file")
    import_p.add_argument("user", help="User id")
    import_p.add_argument("file", help="Export document")

    return parser


def _cmd_parse(text: str, now_raw: Optional[str]) -> int:
    try:
        now = datetime.fromisoformat(now_raw) if now_raw else datetime.now()
    except ValueError:
        print(f"Invalid --now value: {now_raw}", file=sys.stderr)
        return 2
    result = IntentParser(lambda: now).parse(text)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0


async def _export(settings: Settings, user_id: str) -> Dict[str, Any]:
    from daybook.container import ServiceContainer

    container = ServiceContainer.build(settings)
    try:
        return await container.memory.export_user_memories(user_id)
    finally:
        await container.stop()


async def _import(settings: Settings, user_id: str, payload: Dict[str, Any]) -> int:
    from daybook.container import ServiceContainer

    container = ServiceContainer.build(settings)
    try:
        return await container.memory.import_user_memories(user_id, payload)
    finally:
        await container.stop()


def _cmd_memories(args: argparse.Namespace, settings: Settings) -> int:
    if args.memories_action == "export":
        document = asyncio.run(_export(settings, args.user))
        text = json.dumps(document, indent=2, ensure_ascii=False)
        if args.out:
            Path(args.out).write_text(text + "\n", encoding="utf-8")
            print(f"Exported {len(document['memories'])} memories to {args.out}")
        else:
            print(text)
        return 0

    try:
        payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Cannot read {args.file}: {exc}", file=sys.stderr)
        return 1
    count = asyncio.run(_import(settings, args.user, payload))
    print(f"Imported {count} memories for {args.user}")
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "parse":
            return _cmd_parse(args.text, args.now)
        if args.command == "memories":
            return _cmd_memories(args, settings)
        if args.command == "serve":
            from daybook.api.server import run_http_server

            run_http_server(settings, host=args.host, port=args.port, log_level="debug" if args.debug else "info")
            return 0
    except DaybookError as exc:
        print(f"daybook: {exc}", file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
