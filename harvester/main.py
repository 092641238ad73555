"""
Main entry point for SERP Harvester.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from harvester.app import HarvesterApp
from harvester.utils.config import ensure_directories, get_settings
from harvester.utils.logging import configure_logging, get_logger
from harvester.utils.notification import Event, EventType

logger = get_logger(__name__)


def parse_engine_arg(value: str) -> dict[str, Any]:
    """Parse ``engine:country[:lang[:domain[:location]]]`` into an engine config dict.

    Example:
        >>> parse_engine_arg("google:de:de:www.google.de")["domain"]
        'www.google.de'
    """
    parts = value.split(":", 4)
    engine_id = parts[0].strip().lower()
    if engine_id not in ("google", "bing") or len(parts) < 2 or not parts[1]:
        raise argparse.ArgumentTypeError(
            f"invalid engine '{value}' (expected engine:country[:lang[:domain[:location]]])"
        )
    parts += [""] * (5 - len(parts))
    return {
        "engine_id": engine_id,
        "engine_name": engine_id.capitalize(),
        "country_code": parts[1].lower(),
        "lang_code": parts[2] or None,
        "domain": parts[3] or None,
        "location": parts[4] or None,
    }


def _print(result: dict[str, Any]) -> None:
    print(json.dumps(result, ensure_ascii=False, indent=2))


def _print_event(event: Event) -> None:
    if event.type != EventType.LOG_ENTRY:
        return
    entry = event.payload.get("entry", {})
    print(
        f"{entry.get('timestamp', '')} [{entry.get('level', '')}] "
        f"{event.payload.get('session_id', '')}: {entry.get('message', '')}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvester",
        description="SERP Harvester - multi-page search result collection",
    )
    parser.add_argument(
        "--console-log", action="store_true", help="Colored console logs instead of JSON lines"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create directories and the database schema")

    create = sub.add_parser("create", help="Create a session")
    create.add_argument("--name", default="")
    create.add_argument("--query", "-q", action="append", default=[], help="Search query (repeatable)")
    create.add_argument("--queries-file", help="File with one query per line")
    create.add_argument(
        "--engine", "-e", action="append", default=[], type=parse_engine_arg,
        help="engine:country[:lang[:domain[:location]]] (repeatable)",
    )
    create.add_argument("--quota", type=int)
    create.add_argument("--delay", nargs=2, type=float, metavar=("MIN_S", "MAX_S"))
    create.add_argument("--screenshots", action="store_true")
    create.add_argument("--html", action="store_true")
    create.add_argument("--proxies-file", help="File with ip:port:user:pass lines")

    start = sub.add_parser("start", help="Start a session and serve until interrupted")
    start.add_argument("session_id")

    for name, help_text in (
        ("pause", "Pause a session"),
        ("delete", "Delete a session"),
        ("status", "Show session status"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("session_id")

    sub.add_parser("list", help="List sessions")
    sub.add_parser("run", help="Resume interrupted sessions and serve until interrupted")
    return parser


async def _serve(app: HarvesterApp) -> None:
    """Block until SIGINT/SIGTERM, printing activity lines."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    unsubscribe = app.notifier.subscribe(_print_event)
    try:
        await stop.wait()
    finally:
        unsubscribe()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    logger.info("Shutdown requested")


def _read_lines(path: str | None) -> list[str]:
    if not path:
        return []
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


async def run_command(args: argparse.Namespace) -> int:
    app = HarvesterApp()
    serving = args.command in ("start", "run")
    await app.start(reconcile=serving)

    try:
        if args.command == "init":
            print("SERP Harvester initialized successfully.")
            return 0

        if args.command == "create":
            proxies = _read_lines(args.proxies_file)
            payload: dict[str, Any] = {
                "name": args.name,
                "queries": args.query + _read_lines(args.queries_file),
                "configs": args.engine,
                "quota": args.quota,
                "capture_screenshots": args.screenshots,
                "capture_html": args.html,
                "use_proxies": bool(proxies),
                "proxy_text": "\n".join(proxies) or None,
            }
            if args.delay:
                payload["delay_min_s"], payload["delay_max_s"] = args.delay
            result = await app.commands.dispatch("CREATE_SESSION", payload)
        elif args.command == "start":
            result = await app.commands.dispatch("START", {"session_id": args.session_id})
        elif args.command == "pause":
            result = await app.commands.dispatch("PAUSE", {"session_id": args.session_id})
        elif args.command == "delete":
            result = await app.commands.dispatch("DELETE_SESSION", {"session_id": args.session_id})
        elif args.command == "status":
            result = await app.commands.dispatch("GET_SESSION_STATUS", {"session_id": args.session_id})
        elif args.command == "list":
            result = await app.commands.dispatch("GET_SESSIONS")
        else:
            result = {"ok": True}

        if args.command != "run":
            _print(result)
        if not result.get("ok"):
            return 1
        if serving:
            await _serve(app)
        return 0
    finally:
        await app.close()


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()

    ensure_directories()
    settings = get_settings()
    configure_logging(log_level=settings.general.log_level, json_format=not args.console_log)
    logger.info("SERP Harvester", version=settings.general.version, command=args.command)

    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
