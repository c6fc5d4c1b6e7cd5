"""Main CLI entry point for the script conveyor.

Usage:
    python -m script_conveyor.cli run articles.json                 # Generate scripts for every article
    python -m script_conveyor.cli run articles/ --ids a1 a2         # Only some articles, in this order
    python -m script_conveyor.cli run articles.json --thinking      # Also print streamed model output
    python -m script_conveyor.cli stats                             # Show job counts and quota usage
    python -m script_conveyor.cli serve --port 8000                 # Start the web API
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.table import Table

from ..logging_config import console, setup_logging


class ConsoleSink:
    """Push channel sink that prints progress events to the terminal."""

    def __init__(self, show_thinking: bool = False):
        self.show_thinking = show_thinking

    async def send_json(self, data: dict) -> None:
        event = data.get("event")
        payload = data.get("data", {})
        job = payload.get("source_item_id", "")

        if event == "draft_started":
            console.print(f"[cyan]{job}[/cyan] drafting iteration {payload['iteration']}...")
        elif event == "draft_completed":
            console.print(
                f"[cyan]{job}[/cyan] draft v{payload['version']}: "
                f"{len(payload['scenes'])} scenes, {payload['total_duration']:.0f}s"
            )
        elif event == "evaluation_completed":
            console.print(
                f"[cyan]{job}[/cyan] score {payload['score']}/100 ({payload['verdict']})"
            )
        elif event in ("draft_thinking", "evaluation_thinking") and self.show_thinking:
            console.print(payload["content"], end="", style="dim", markup=False)
        elif event == "job_completed":
            style = "green" if payload["success"] else "yellow"
            status = payload["job"]["status"]
            reason = f" - {payload['reason']}" if payload.get("reason") else ""
            console.print(f"[{style}]{job} -> {status}{reason}[/{style}]")
        elif event == "job_error":
            console.print(f"[red]{job} failed: {payload['error']}[/red]")
        elif event == "limit_reached":
            console.print(
                f"[yellow]Quota reached ({payload['items_processed_today']}/{payload['daily_limit']} today, "
                f"${payload['current_month_cost']:.2f} this month), stopping[/yellow]"
            )

    async def close(self, code: int = 1000) -> None:
        pass


def _build(config, sources_path: Path | None = None):
    """Wire up the pipeline from configuration."""
    from ..agents import EditorAgent, ScriptwriterAgent, get_llm_provider
    from ..budget import BudgetGovernor
    from ..channels import ChannelManager
    from ..pipeline import GenerationPipeline
    from ..sources import InMemorySourceProvider, JsonSourceProvider
    from ..storage import JobStore

    sources_path = sources_path or config.storage.sources_path
    sources = JsonSourceProvider(sources_path) if sources_path else InMemorySourceProvider()
    llm = get_llm_provider(config)
    data_dir = config.storage.data_dir

    return GenerationPipeline(
        store=JobStore(data_dir=data_dir),
        governor=BudgetGovernor(config.budget, data_dir=data_dir),
        channels=ChannelManager(),
        sources=sources,
        writer=ScriptwriterAgent(llm),
        editor=EditorAgent(llm),
        config=config.generation,
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Generate scripts for a batch of articles."""
    from ..channels import subject_key
    from ..config import GenerationSettings, load_config
    from ..errors import ConveyorError
    from ..pipeline import SubjectContext

    config = load_config(args.config)
    if args.provider:
        config.llm.provider = args.provider
    if args.data_dir:
        config.storage.data_dir = args.data_dir

    try:
        pipeline = _build(config, args.articles)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    overrides = {}
    if args.max_iterations is not None:
        overrides["max_iterations"] = args.max_iterations
    if args.threshold is not None:
        overrides["approval_threshold"] = args.threshold

    item_ids = args.ids or pipeline.sources.list_ids()

    async def run() -> None:
        settings = GenerationSettings.parse(overrides, config.generation)
        if not item_ids:
            raise ConveyorError("No articles found")
        pipeline.governor.ensure_quota(args.subject)

        await pipeline.channels.subscribe(subject_key(args.subject), ConsoleSink(args.thinking))
        context = SubjectContext(subject_id=args.subject)
        await pipeline.run_batch(context, item_ids, settings)

    console.print(f"[bold]Generating scripts for {len(item_ids)} articles[/bold] (subject {args.subject})")
    try:
        asyncio.run(run())
    except ConveyorError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130

    _print_stats(pipeline, args.subject)
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show job counts and quota usage for a subject."""
    from ..config import load_config

    config = load_config(args.config)
    if args.data_dir:
        config.storage.data_dir = args.data_dir
    if config.storage.data_dir is None:
        console.print("[yellow]No data_dir configured; nothing is persisted between runs.[/yellow]")

    pipeline = _build(config)
    _print_stats(pipeline, args.subject)
    return 0


def _print_stats(pipeline, subject_id: str) -> None:
    stats = pipeline.get_stats(subject_id)

    table = Table(title=f"Subject {subject_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Scripts written", str(stats.written))
    table.add_row("Approved", str(stats.approved))
    table.add_row("Awaiting review", str(stats.in_review))
    table.add_row("Rejected", str(stats.rejected))
    table.add_row("In progress", str(stats.iterating))
    table.add_row("Processed today", f"{stats.items_processed_today}/{stats.daily_limit}")
    table.add_row("Cost this month", f"${stats.current_month_cost:.2f} / ${stats.monthly_budget_limit:.2f}")
    table.add_row("Lifetime passed/failed", f"{stats.total_passed}/{stats.total_failed}")
    console.print(table)


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the web API."""
    from ..web.__main__ import serve

    return serve(args.config, args.host, args.port, reload=args.reload, verbose=args.verbose)


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Script Conveyor CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Generate scripts for a batch of articles")
    run_parser.add_argument("articles", type=Path, help="JSON file or directory of articles")
    run_parser.add_argument("--ids", nargs="+", help="Article IDs to process (default: all)")
    run_parser.add_argument("--subject", default="local", help="Subject ID to charge (default: local)")
    run_parser.add_argument("--provider", choices=["mock", "claude-code", "openai"], help="LLM provider override")
    run_parser.add_argument("--max-iterations", type=int, help="Draft/evaluate passes per article")
    run_parser.add_argument("--threshold", type=float, help="Approval score on the 1-10 scale")
    run_parser.add_argument("--data-dir", type=Path, help="Where to persist jobs and quota state")
    run_parser.add_argument("--thinking", action="store_true", help="Print streamed model output")
    run_parser.set_defaults(func=cmd_run)

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show job counts and quota usage")
    stats_parser.add_argument("--subject", default="local", help="Subject ID (default: local)")
    stats_parser.add_argument("--data-dir", type=Path, help="Where jobs and quota state are persisted")
    stats_parser.set_defaults(func=cmd_stats)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the web API")
    serve_parser.add_argument("--host", help="Host to bind to (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    # API keys such as OPENAI_API_KEY may live in a .env beside the project
    load_dotenv(Path(__file__).parent.parent.parent / ".env")

    setup_logging(verbose=args.verbose, quiet=args.quiet)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
