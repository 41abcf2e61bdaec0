"""Rulebook CLI entrypoint."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

from rulebook import __version__
from rulebook.core.errors import RulebookError


def read_json_input(path_or_stdin: str | None) -> Any:
    """Read JSON from file path or stdin."""
    if path_or_stdin and path_or_stdin != "-":
        with open(path_or_stdin) as f:
            return json.load(f)
    return json.load(sys.stdin)


def read_text_input(path_or_stdin: str | None) -> str:
    if path_or_stdin and path_or_stdin != "-":
        return Path(path_or_stdin).read_text(encoding="utf-8")
    return sys.stdin.read()


def print_output(data: Any, as_json: bool) -> None:
    """Print output as JSON or human-readable format."""
    if as_json:
        json.dump(data, sys.stdout, indent=2, default=str)
        print()
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            print(item)
    else:
        print(data)


def _open_context(args: argparse.Namespace):
    from rulebook.context import RulebookContext
    from rulebook.utils import setup_logging

    ctx = RulebookContext.open(Path(args.config) if args.config else None)
    setup_logging(ctx.config.logging.level, json_format=ctx.config.logging.format == "json")
    return ctx


def _print_curation(result, as_json: bool) -> None:
    if as_json:
        print_output(
            {
                **result.summary(),
                "conflicts": [c.model_dump(mode="json") for c in result.conflicts],
                "promotions": [p.model_dump(mode="json") for p in result.promotions],
                "decision_log": [e.model_dump(mode="json") for e in result.decision_log],
            },
            as_json=True,
        )
        return
    print_output(result.summary(), as_json=False)
    for conflict in result.conflicts:
        print(f"  conflict [{conflict.kind}] with {conflict.existing_id}: {conflict.reason}")
    for promo in result.promotions:
        print(f"  {promo.bullet_id}: {promo.from_maturity} -> {promo.to_maturity}")


def cmd_init(args: argparse.Namespace) -> None:
    """Create an empty playbook."""
    with _open_context(args) as ctx:
        ctx.store.init(name=args.name, description=args.description)
        print_output({"status": "created", "path": str(ctx.store.path)}, args.json)


def cmd_stats(args: argparse.Namespace) -> None:
    from rulebook.core.serving import playbook_stats
    from rulebook.utils import utcnow

    with _open_context(args) as ctx:
        stats = playbook_stats(ctx.store.load(), ctx.config.scoring, utcnow())
    if args.json:
        print_output(stats, as_json=True)
        return
    print(f"Playbook: {stats['name']}")
    print(f"Bullets: {stats['live']} live / {stats['total']} total ({stats['pinned']} pinned)")
    print("By maturity:")
    for maturity, count in stats["by_maturity"].items():
        print(f"  {maturity}: {count}")
    print(f"Reflections: {stats['total_reflections']}")


def cmd_context(args: argparse.Namespace) -> None:
    """Show the bullets most relevant to a task."""
    from rulebook.core.serving import check_deprecated_patterns, get_relevant_bullets
    from rulebook.utils import utcnow

    with _open_context(args) as ctx:
        playbook = ctx.store.load()
        ranked = get_relevant_bullets(playbook, args.task, ctx.config.scoring, utcnow(),
                                      top_k=args.top_k)
        warnings = check_deprecated_patterns(playbook.deprecated_patterns, args.task)

    if args.json:
        print_output({"bullets": [s.to_dict() for s in ranked],
                      "warnings": [w.__dict__ for w in warnings]}, as_json=True)
        return
    print(f"Found {len(ranked)} bullets:")
    for scored in ranked:
        bullet = scored.bullet
        marker = "AVOID" if bullet.is_negative else bullet.maturity
        print(f"\n[{bullet.id}] ({bullet.category}, {marker}) score={scored.effective_score:.2f}")
        print(f"  {bullet.content}")
    for warning in warnings:
        hint = f" Use instead: {warning.replacement}" if warning.replacement else ""
        print(f"\nWARNING: matches deprecated pattern {warning.pattern!r}: {warning.reason}.{hint}")


def cmd_top(args: argparse.Namespace) -> None:
    from rulebook.core.serving import top_bullets
    from rulebook.utils import utcnow

    with _open_context(args) as ctx:
        ranked = top_bullets(ctx.store.load(), ctx.config.scoring, utcnow(), limit=args.limit)
    if args.json:
        print_output([s.to_dict() for s in ranked], as_json=True)
        return
    for i, scored in enumerate(ranked, start=1):
        print(f"{i:>3}. [{scored.bullet.id}] {scored.effective_score:+.2f}  {scored.bullet.content}")


def cmd_stale(args: argparse.Namespace) -> None:
    """List live bullets that have gone without feedback."""
    from rulebook.core.serving import stale_bullets
    from rulebook.utils import utcnow

    with _open_context(args) as ctx:
        days = args.days if args.days is not None else ctx.config.curation.stale_days
        found = stale_bullets(ctx.store.load(), ctx.config.scoring, utcnow(), days)
    if args.json:
        print_output([s.to_dict() for s in found], as_json=True)
        return
    print(f"{len(found)} bullets without feedback in {days} days:")
    for stale in found:
        print(f"  [{stale.bullet.id}] {int(stale.days_since_feedback)}d "
              f"score={stale.effective_score:+.2f}  {stale.bullet.content}")


def cmd_similar(args: argparse.Namespace) -> None:
    """Check how a candidate rule compares with the stored bullets."""
    with _open_context(args) as ctx:
        result = ctx.similarity.check(
            args.text,
            ctx.store.load().bullets,
            is_negative=args.negative,
            category=args.category,
        )
        semantic = ctx.similarity.semantic_enabled
    print_output(
        {
            "verdict": result.verdict,
            "match_id": result.match_id,
            "similarity": round(result.similarity, 4) if result.similarity is not None else None,
            "tier": result.tier,
            "semantic": semantic,
        },
        args.json,
    )


def cmd_mark(args: argparse.Namespace) -> None:
    """Record helpful or harmful feedback on a bullet."""
    from rulebook.pipeline import Pipeline

    with _open_context(args) as ctx:
        result = Pipeline(ctx).mark(
            args.bullet_id,
            helpful=args.helpful,
            reason=args.reason,
            context=args.context,
            session=args.session,
        )
    _print_curation(result, args.json)


def cmd_forget(args: argparse.Namespace) -> None:
    from rulebook.pipeline import Pipeline

    with _open_context(args) as ctx:
        entry = Pipeline(ctx).forget(args.bullet_id, args.reason)
    print_output(entry.model_dump(mode="json"), args.json)


def cmd_invert(args: argparse.Namespace) -> None:
    """Replace a rule with its anti-pattern."""
    from rulebook.pipeline import Pipeline

    with _open_context(args) as ctx:
        result = Pipeline(ctx).invert(args.bullet_id, args.reason)
    report = result.inversions[0]
    print_output(report.model_dump(mode="json"), args.json)


def cmd_curate(args: argparse.Namespace) -> None:
    """Apply a JSON list of deltas (or {"deltas": [...]}) to the playbook."""
    from rulebook.pipeline import Pipeline

    data = read_json_input(args.deltas)
    deltas = data.get("deltas", []) if isinstance(data, dict) else data
    if not isinstance(deltas, list):
        raise RulebookError("deltas input must be a list")
    with _open_context(args) as ctx:
        result = Pipeline(ctx).curate(deltas)
    _print_curation(result, args.json)


def cmd_validate(args: argparse.Namespace) -> None:
    """Check a proposed rule against historical evidence."""
    from rulebook.pipeline import Pipeline

    with _open_context(args) as ctx:
        outcome = Pipeline(ctx).validate(args.rule)
    print_output(
        {
            "verdict": outcome.verdict,
            "confidence": outcome.confidence,
            "reason": outcome.reason,
            "refined_rule": outcome.refined_rule,
            "success_count": outcome.gate.success_count,
            "failure_count": outcome.gate.failure_count,
            "search_status": outcome.gate.search_status,
        },
        args.json,
    )


def cmd_reflect(args: argparse.Namespace) -> None:
    """Reflect on a session diary and curate the resulting deltas."""
    from rulebook.pipeline import Pipeline
    from rulebook.reflector import SessionDiary

    content = read_text_input(args.diary)
    session_path = args.session or (args.diary if args.diary and args.diary != "-" else "stdin")
    diary = SessionDiary(session_path=session_path, content=content, agent=args.agent)

    with _open_context(args) as ctx:
        result = Pipeline(ctx).reflect_session(diary, apply=not args.dry_run)

    if result.curation is None:
        print_output([d.model_dump(mode="json") for d in result.reflection.deltas], args.json)
        return
    if not args.json:
        print(f"Iterations: {result.reflection.iterations} ({result.reflection.exit_reason})")
        print(f"Rejected by evidence gate: {result.rejected}")
    _print_curation(result.curation, args.json)


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the MCP server."""
    from rulebook.mcp.server import create_server

    ctx = _open_context(args)
    transport = args.transport or ctx.config.mcp.transport
    port = args.port or ctx.config.mcp.port
    server = create_server(ctx)
    try:
        if transport == "stdio":
            server.run(transport="stdio")
        else:
            server.run(transport=transport, port=port)
    finally:
        ctx.close()


def cmd_version(args: argparse.Namespace) -> None:
    print(f"rulebook {__version__}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rulebook",
        description="Rulebook - curate and score an agent playbook from session feedback",
    )
    parser.add_argument("--config", help="Path to a TOML config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add(name: str, func, help_text: str, json_flag: bool = True) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        if json_flag:
            sub.add_argument("--json", action="store_true", help="Output JSON")
        sub.set_defaults(func=func)
        return sub

    init_parser = add("init", cmd_init, "Create an empty playbook")
    init_parser.add_argument("--name", default="playbook")
    init_parser.add_argument("--description", default="")

    add("version", cmd_version, "Print the rulebook version", json_flag=False)
    add("stats", cmd_stats, "Show playbook statistics")

    context_parser = add("context", cmd_context, "Show bullets relevant to a task")
    context_parser.add_argument("task", help="Task description")
    context_parser.add_argument("--top-k", type=int, default=10)

    top_parser = add("top", cmd_top, "List bullets by effective score")
    top_parser.add_argument("--limit", type=int, default=10)

    stale_parser = add("stale", cmd_stale, "List bullets without recent feedback")
    stale_parser.add_argument("--days", type=int,
                              help="Window in days (default: curation.stale_days)")

    similar_parser = add("similar", cmd_similar,
                         "Check a candidate rule for duplicates and conflicts")
    similar_parser.add_argument("text")
    similar_parser.add_argument("--negative", action="store_true",
                                help="Treat the candidate as an anti-pattern")
    similar_parser.add_argument("--category")

    mark_parser = add("mark", cmd_mark, "Mark a bullet helpful or harmful")
    mark_parser.add_argument("bullet_id")
    group = mark_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--helpful", action="store_true", dest="helpful")
    group.add_argument("--harmful", action="store_false", dest="helpful")
    mark_parser.add_argument(
        "--reason",
        choices=["caused_bug", "wasted_time", "contradicted_requirements", "wrong_context",
                 "outdated", "other"],
    )
    mark_parser.add_argument("--context")
    mark_parser.add_argument("--session")

    forget_parser = add("forget", cmd_forget, "Deprecate a bullet and block its content")
    forget_parser.add_argument("bullet_id")
    forget_parser.add_argument("--reason", required=True)

    invert_parser = add("invert", cmd_invert, "Turn a rule into an anti-pattern")
    invert_parser.add_argument("bullet_id")
    invert_parser.add_argument("--reason", required=True)

    curate_parser = add("curate", cmd_curate, "Apply deltas from a JSON file or stdin")
    curate_parser.add_argument("deltas", nargs="?", default="-", help="Path to JSON, or - for stdin")

    validate_parser = add("validate", cmd_validate, "Check a proposed rule against history")
    validate_parser.add_argument("rule")

    reflect_parser = add("reflect", cmd_reflect, "Reflect on a session diary")
    reflect_parser.add_argument("diary", nargs="?", default="-", help="Diary file, or - for stdin")
    reflect_parser.add_argument("--session", help="Session path recorded as provenance")
    reflect_parser.add_argument("--agent")
    reflect_parser.add_argument("--dry-run", action="store_true",
                                help="Print gated deltas without curating")

    serve_parser = add("serve", cmd_serve, "Run the MCP server", json_flag=False)
    serve_parser.add_argument("--transport", choices=["stdio", "http", "sse"])
    serve_parser.add_argument("--port", type=int)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except (RulebookError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
