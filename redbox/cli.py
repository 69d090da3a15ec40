#!/usr/bin/env python3
"""
RedBox CLI — place the call. Keep the change.

Named after the red box, the phone phreaker device that faked the coin
tones of a payphone. Every command has a phreaker name and a standard alias:

    PHREAKER        STANDARD        WHAT IT DOES
    --------        --------        ----------------------------------
    dial            serve, start    Start the RedBox HTTP server
    ask             query           Send one prompt in a conversation
    hangup          reset           Archive and clear a conversation
    tap             log             Live wiretap — watch the wire
    coins           keys, costs     Show per-key usage and spend
    dump            archive         Print a conversation's archive
"""

import argparse
import asyncio
import json
import sys

__version__ = "0.4.0"


def _engine():
    from redbox.config import get_config, setup_logging
    from redbox.engine import ChatEngine

    cfg = get_config()
    setup_logging(cfg)
    return ChatEngine.from_config(cfg)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the RedBox HTTP server."""
    import uvicorn
    from redbox.config import get_config

    cfg = get_config()
    server = cfg.get("server", {}) or {}
    host = args.host or server.get("host", "0.0.0.0")
    port = args.port or server.get("port", 8000)

    print(f"  ☎  Dialing up on {host}:{port}")
    print(f"  Endpoint: {cfg['engine']['endpoint']}")
    print(f"  Model: {cfg['engine']['model']}")
    print()

    uvicorn.run(
        "redbox.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_ask(args):
    """Send one prompt and print the answer as it arrives."""
    from redbox.errors import RedboxError

    async def run():
        engine = _engine()
        try:
            options = {"user_name": args.user, "use_alt_api": args.alt}
            if args.image:
                options["image_url"] = args.image
            if args.no_stream:
                text = await engine.ask(" ".join(args.prompt), args.conversation, **options)
                print(text)
            else:
                options["stream"] = True
                await engine.ask_stream(
                    lambda chunk: print(chunk, end="", flush=True),
                    " ".join(args.prompt),
                    args.conversation,
                    **options,
                )
                print()
        finally:
            await engine.close()

    try:
        asyncio.run(run())
    except RedboxError as e:
        print(f"  ✗  {e}", file=sys.stderr)
        sys.exit(1)


def cmd_hangup(args):
    """Archive and clear a conversation."""
    async def run():
        engine = _engine()
        try:
            return await engine.reset_conversation(args.conversation)
        finally:
            await engine.close()

    conversation = asyncio.run(run())
    if conversation is None:
        print(f"  ✗  No conversation '{args.conversation}'")
    else:
        print(f"  ✓  Hung up on '{args.conversation}'; history archived")


def cmd_tap(args):
    """Live wiretap — watch requests on the wire."""
    from redbox.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        kind_filter=args.kind,
        raw=args.raw,
    )


def cmd_coins(args):
    """Show per-key usage and spend."""
    from redbox.costs import CostTracker

    async def run():
        engine = _engine()
        try:
            await engine._ensure_ready()
            return await CostTracker(engine.store).get_stats()
        finally:
            await engine.close()

    stats = asyncio.run(run())
    if args.json:
        print(json.dumps(stats, indent=2))
        return

    print(f"  🪙 Keys: {stats['keys']}")
    print(f"  💬 Queries: {stats['queries']:,}")
    print(f"  📊 Tokens: {stats['tokens']:,}")
    print(f"  💰 Spend: ${stats['total']:.4f}")
    for row in stats["by_key"]:
        print(f"     {row['key']:<16} {row['queries']:>6} q  {row['tokens']:>9,} tok  ${row['balance']:.4f}")


def cmd_dump(args):
    """Print the archived batches for a conversation."""
    from redbox.archive import ArchiveStore
    from redbox.config import get_config

    cfg = get_config()
    archive = ArchiveStore((cfg.get("archive", {}) or {}).get("path", "./archives"))
    batches = archive.read_batches(args.conversation)
    if not batches:
        print(f"  ✗  Nothing archived for '{args.conversation}'")
        return
    indent = 2 if args.pretty else None
    for batch in batches:
        print(json.dumps(batch, indent=indent, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (phreaker + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redbox",
        description="RedBox — place the call. Keep the change.",
        epilog=(
            "Each command has a phreaker name and standard aliases.\n"
            "Example: 'redbox dial' and 'redbox serve' do the same thing.\n"
            "Run 'redbox <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"redbox {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "serve", "start"],
                 "Start the RedBox HTTP server", cmd_dial, setup_dial)

    def setup_ask(p):
        p.add_argument("prompt", nargs="+", help="Prompt text")
        p.add_argument("--conversation", "-c", default="cli", help="Conversation id")
        p.add_argument("--user", "-u", default="User", help="User name")
        p.add_argument("--image", default=None, help="Image URL to attach")
        p.add_argument("--alt", action="store_true", help="Route through the alternate API")
        p.add_argument("--no-stream", action="store_true", help="Wait for the full answer")

    _add_command(sub, ["ask", "query"],
                 "Send one prompt in a conversation", cmd_ask, setup_ask)

    def setup_hangup(p):
        p.add_argument("conversation", help="Conversation id")

    _add_command(sub, ["hangup", "reset"],
                 "Archive and clear a conversation", cmd_hangup, setup_hangup)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--kind", "-k", choices=["request", "response", "error"], default=None,
                       help="Filter by entry kind")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log"],
                 "Live wiretap — watch requests on the wire", cmd_tap, setup_tap)

    def setup_coins(p):
        p.add_argument("--json", action="store_true", help="Print raw JSON")

    _add_command(sub, ["coins", "keys", "costs"],
                 "Show per-key usage and spend", cmd_coins, setup_coins)

    def setup_dump(p):
        p.add_argument("conversation", help="Conversation id")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "archive"],
                 "Print a conversation's archived batches", cmd_dump, setup_dump)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
