"""Developer CLI for trying the routing pipeline locally.

Subcommands:
- ask: answer messages through the full pipeline
- classify: show the tier a query would be routed to
- match: show the rule (if any) answering a query
- stats: replay a file of queries and print usage aggregates
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from query_gate import __version__
from query_gate.core.errors import QueryGateError
from query_gate.core.observability import configure_logfire
from query_gate.core.query_classifier import QueryClassifier, estimate_tokens
from query_gate.core.request_queue import UserTier
from query_gate.core.rule_engine import RuleEngine
from query_gate.pipeline import AssistantPipeline, AssistantReply, AssistantServices
from query_gate.settings import get_settings

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="query-gate",
        description="Query Gate - cost-aware routing for assistant queries",
    )
    parser.add_argument("--version", "-v", action="version", version=__version__)
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for query_gate modules",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask = subparsers.add_parser("ask", help="Answer one or more messages")
    ask.add_argument("messages", nargs="+", help="Messages to answer, in order")
    ask.add_argument("--user-id", "-u", default=None, help="Caller identity")
    ask.add_argument(
        "--tier",
        "-t",
        default=UserTier.FREE.value,
        choices=[tier.value for tier in UserTier],
        help="Caller tier used for queue priority",
    )

    classify = subparsers.add_parser("classify", help="Show the routing decision for a query")
    classify.add_argument("query")

    match = subparsers.add_parser("match", help="Show the rule answering a query")
    match.add_argument("query")

    stats = subparsers.add_parser("stats", help="Replay queries and print usage aggregates")
    stats.add_argument(
        "file",
        nargs="?",
        type=argparse.FileType("r"),
        default=sys.stdin,
        help="File with one query per line (default: stdin)",
    )
    stats.add_argument("--tier", "-t", default=UserTier.FREE.value, choices=[t.value for t in UserTier])
    return parser


def _render_reply(message: str, reply: AssistantReply) -> None:
    subtitle = f"source={reply.source.value}"
    if reply.model:
        subtitle += f" model={reply.model} tokens={reply.tokens} cost=${reply.cost_usd:.5f}"
    if reply.error_kind is not None:
        subtitle += f" error={reply.error_kind.value}"
    subtitle += f" {reply.elapsed_ms:.1f}ms"
    style = "yellow" if reply.degraded else "green"
    console.print(Panel(reply.text, title=message, subtitle=subtitle, border_style=style))


async def _ask(messages: List[str], user_id: Optional[str], tier: UserTier) -> int:
    pipeline = AssistantPipeline(AssistantServices.from_settings())
    exit_code = 0
    try:
        for message in messages:
            try:
                reply = await pipeline.answer(message, user_id=user_id, user_tier=tier)
            except QueryGateError as e:
                console.print(f"[red]{e.failure_code}[/red]: {e}")
                exit_code = 1
                continue
            _render_reply(message, reply)
    finally:
        await pipeline.aclose()
    return exit_code


async def _stats(queries: List[str], tier: UserTier) -> int:
    pipeline = AssistantPipeline(AssistantServices.from_settings())
    try:
        for query in queries:
            try:
                await pipeline.answer(query, user_tier=tier)
            except QueryGateError as e:
                console.print(f"[red]{e.failure_code}[/red]: {query!r}")
        stats = pipeline.services.analytics.stats()
    finally:
        await pipeline.aclose()

    table = Table(title=f"Usage over {len(queries)} queries")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in stats.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)
    return 0


def _classify(query: str) -> int:
    classifier = QueryClassifier.from_settings(get_settings().classifier)
    result = classifier.classify(query)
    table = Table(show_header=False)
    table.add_row("complexity", result.complexity.value)
    table.add_row("tier", result.tier.value)
    table.add_row("model", result.recommended_model)
    table.add_row("confidence", f"{result.confidence:.2f}")
    table.add_row("reasoning", result.reasoning)
    table.add_row("est. cost", f"${classifier.estimate_cost(result.tier, estimate_tokens(query) + 500):.5f}")
    console.print(table)
    return 0


def _match(query: str) -> int:
    engine = RuleEngine.from_settings(get_settings().rules)
    found = engine.find(query)
    if found is None:
        hint = "likely" if engine.is_likely_rule_based(query) else "unlikely"
        console.print(f"[yellow]No rule matched[/yellow] (rule-based answer {hint})")
        return 1
    console.print(Panel(found.response, title=found.rule_name, border_style="cyan"))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("query_gate").setLevel(args.log_level)

    settings = get_settings()
    token = settings.provider.logfire_token
    configure_logfire(token.get_secret_value() if token else None)

    if args.command == "classify":
        return _classify(args.query)
    if args.command == "match":
        return _match(args.query)
    if args.command == "ask":
        return asyncio.run(_ask(args.messages, args.user_id, UserTier(args.tier)))
    queries = [line.strip() for line in args.file if line.strip()]
    return asyncio.run(_stats(queries, UserTier(args.tier)))


def main_entry() -> None:
    """Entry point for the installed CLI tool."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main_entry()
