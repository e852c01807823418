#!/usr/bin/env python3
"""
ToolStream CLI - Main Entry Point

Usage:
    toolstream "create src/App.tsx with a counter"       # Run one session in ./workspace
    toolstream -d ./my-app "add axios to package.json"   # Use another workspace
    toolstream --json "..."                              # Print the SessionResult as JSON
    toolstream --help                                    # Show help
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console

from toolstream.core.config import settings


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="toolstream",
        description="ToolStream - agent loop with streaming tool execution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  toolstream "create src/App.tsx and src/index.css"    Build files in ./workspace
  toolstream -n 5 "fix the import in src/main.ts"       At most 5 iterations
  toolstream --json "..." > result.json                 Machine-readable result

Exit codes:
  0  goals satisfied
  1  fatal error
  2  iteration budget exhausted
  130 cancelled
        """
    )

    parser.add_argument(
        "request",
        nargs="?",
        help="What to build (reads stdin when omitted)"
    )

    parser.add_argument(
        "-d", "--workspace",
        type=str,
        default=settings.CONTENT_STORE_ROOT,
        help=f"Workspace directory (default: {settings.CONTENT_STORE_ROOT})"
    )

    parser.add_argument(
        "-n", "--max-iterations",
        type=int,
        default=settings.AGENT_MAX_ITERATIONS,
        help=f"Maximum iterations (default: {settings.AGENT_MAX_ITERATIONS})"
    )

    parser.add_argument(
        "-m", "--model",
        type=str,
        default=settings.CLAUDE_MODEL,
        help=f"Claude model (default: {settings.CLAUDE_MODEL})"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.SESSION_HARD_TIMEOUT,
        help=f"Hard session timeout in seconds, 0 disables (default: {settings.SESSION_HARD_TIMEOUT})"
    )

    parser.add_argument(
        "--deploy-webhook",
        type=str,
        default=settings.DEPLOY_WEBHOOK_URL,
        help="POST the session summary here when it succeeds"
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the session result as JSON instead of the progress view"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    return parser


EXIT_CODES = {
    "success": 0,
    "fatal": 1,
    "exhausted": 2,
    "cancelled": 130,
}


async def run_session(args: argparse.Namespace, console: Console) -> int:
    from toolstream.cli.renderer import ProgressRenderer
    from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster
    from toolstream.modules.orchestrator.loop_controller import LoopController
    from toolstream.modules.tools import build_default_registry
    from toolstream.services.content_store import LocalContentStore
    from toolstream.services.deployment_trigger import HttpDeploymentTrigger, NullDeploymentTrigger
    from toolstream.utils.claude_stream_client import ClaudeStreamClient

    workspace = Path(args.workspace).resolve()
    workspace.mkdir(parents=True, exist_ok=True)
    store = LocalContentStore(workspace)

    broadcaster = ProgressBroadcaster()
    renderer = ProgressRenderer(console)
    if not args.json:
        renderer.attach(broadcaster)
        console.print(f"[dim]Workspace: {workspace}[/dim]")
        console.print(f"[dim]Model: {args.model}[/dim]\n")

    controller = LoopController(
        model_client=ClaudeStreamClient(model=args.model),
        registry=build_default_registry(store),
        content_store=store,
        broadcaster=broadcaster,
        deployment_trigger=HttpDeploymentTrigger(args.deploy_webhook) if args.deploy_webhook else NullDeploymentTrigger(),
        max_iterations=args.max_iterations,
    )

    if settings.LEDGER_BACKEND == "database":
        from toolstream.core.database import close_db, init_db
        await init_db()
    try:
        result = await controller.run(args.request, hard_timeout=args.timeout)
        await controller.drain()
        await broadcaster.drain()
    finally:
        if settings.LEDGER_BACKEND == "database":
            await close_db()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        renderer.render_result(result)
    return EXIT_CODES.get(result.status.value, 1)


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()
    console = Console()

    if not args.request:
        if sys.stdin.isatty():
            parser.print_help()
            sys.exit(1)
        args.request = sys.stdin.read().strip()
    if not args.request:
        console.print("[red]✗ Empty request[/red]")
        sys.exit(1)

    if not settings.ANTHROPIC_API_KEY:
        console.print("[red]✗ ANTHROPIC_API_KEY is not set[/red]")
        console.print("Set it in the environment or in a .env file.")
        sys.exit(1)

    try:
        code = asyncio.run(run_session(args, console))
    except KeyboardInterrupt:
        console.print("\n[magenta]Cancelled[/magenta]")
        sys.exit(EXIT_CODES["cancelled"])
    sys.exit(code)


if __name__ == "__main__":
    main()
