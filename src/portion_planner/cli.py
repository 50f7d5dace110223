"""CLI entry point for the portion planner."""

from __future__ import annotations

import argparse
import datetime as dt
import json
import sys
from pathlib import Path


def load_settings(args: argparse.Namespace) -> dict:
    from portion_planner.config import apply_cli_overrides, load_config

    config = load_config(Path(args.config) if args.config else None)
    return apply_cli_overrides(
        config,
        database_url=args.database_url,
        provider=args.provider,
        model=args.model,
        tolerance=getattr(args, "tolerance", None),
        margin=getattr(args, "margin", None),
    )


def open_session(config: dict):  # type: ignore[no-untyped-def]
    from portion_planner.db import make_session_factory, session_scope

    return session_scope(make_session_factory(config))


def parse_date(raw: str) -> dt.date:
    try:
        return dt.date.fromisoformat(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}', expected YYYY-MM-DD")


def _stdout():  # type: ignore[no-untyped-def]
    from rich.console import Console

    return Console()


def _print_warnings(warnings: list[str]) -> None:
    from rich.markup import escape

    from portion_planner.log import stderr_console

    for warning in warnings:
        stderr_console.print(f"[yellow]{escape(warning)}[/yellow]")


def cmd_init_db(args: argparse.Namespace) -> None:
    from portion_planner.db import init_db, make_engine

    config = load_settings(args)
    init_db(make_engine(config["database"]["url"]))
    print(f"Database ready: {config['database']['url']}")


def cmd_import(args: argparse.Namespace) -> None:
    from portion_planner.indexer import import_recipes

    config = load_settings(args)
    with open_session(config) as session:
        stats = import_recipes(
            session, Path(args.directory), limit=args.limit, dry_run=args.dry_run
        )
    print(
        json.dumps(
            {
                "total_files": stats.total_files,
                "added": stats.added,
                "updated": stats.updated,
                "kept_referenced": stats.unchanged_referenced,
                "skipped": stats.skipped,
            },
            indent=2,
        )
    )


def cmd_create_plan(args: argparse.Namespace) -> None:
    from portion_planner.store import PlanStore

    config = load_settings(args)
    end = args.end or args.start + dt.timedelta(days=args.days)
    with open_session(config) as session:
        plan = PlanStore(session).create_plan(args.name, args.start, end, args.days)
        print(f"Created plan {plan.id}: {plan.name} ({len(plan.days)} days)")


def cmd_add_person(args: argparse.Namespace) -> None:
    from portion_planner.store import PersonStore

    config = load_settings(args)
    with open_session(config) as session:
        person = PersonStore(session, config).add_person(args.plan_id, args.name, args.calories)
        print(f"Added {person.name} ({person.target_calories} kcal/day) to plan {args.plan_id}")


def cmd_generate(args: argparse.Namespace) -> None:
    from portion_planner.generator import AutoGenerateRequest, PlanAutoGenerator

    config = load_settings(args)
    request = AutoGenerateRequest.from_config(
        config,
        categories=[c.strip() for c in args.categories.split(",")] if args.categories else None,
        per_day=args.per_day,
        use_calorie_target=args.calories is not None or None,
        target_calories=args.calories,
        auto_scale=False if args.no_scale else None,
    )
    with open_session(config) as session:
        result = PlanAutoGenerator(session, config).generate(args.plan_id, request)
    _print_warnings(result.warnings)
    print(result.message)
    if result.scaled_count:
        print(f"Scaled {result.scaled_count} recipes")


def cmd_scale(args: argparse.Namespace) -> None:
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

    from portion_planner.ai import build_ingredient_scaler
    from portion_planner.log import stderr_console
    from portion_planner.scaling import ScalingMode, ScalingOrchestrator
    from portion_planner.store import PersonStore, PlanStore

    config = load_settings(args)
    mode = ScalingMode.RESET if args.reset else ScalingMode.FILL_MISSING

    with open_session(config) as session:
        plan = PlanStore(session).require_plan(args.plan_id)
        persons = PersonStore(session, config).list_for_plan(args.plan_id)
        total = len(persons) * (1 if args.entry else len(plan.all_entries()))
        scaler = build_ingredient_scaler(config)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=stderr_console,
        ) as progress:
            task = progress.add_task("Scaling recipes", total=total)
            orchestrator = ScalingOrchestrator(
                session,
                scaler,
                config,
                on_progress=lambda n: progress.update(task, advance=n),
            )
            if args.entry:
                result = orchestrator.scale_entry(args.plan_id, args.entry, mode)
            else:
                result = orchestrator.scale_plan(args.plan_id, mode)

    _print_warnings(result.warnings)
    print(
        f"Scaled {result.scaled_count}, skipped {result.skipped_count}, "
        f"deleted {result.deleted_count}"
    )


def cmd_shopping_list(args: argparse.Namespace) -> None:
    from portion_planner.ai import build_shopping_list_generator
    from portion_planner.shopping import ShoppingListAggregator
    from portion_planner.store import ShoppingListStore

    config = load_settings(args)
    with open_session(config) as session:
        if args.show:
            shopping_list = ShoppingListStore(session).get_for_plan(args.plan_id)
            if shopping_list is None:
                print(f"No shopping list saved for plan {args.plan_id}", file=sys.stderr)
                sys.exit(1)
            items = list(shopping_list.items)
        else:
            generator = build_shopping_list_generator(config)
            result = ShoppingListAggregator(session, generator).generate(args.plan_id)
            _print_warnings(result.warnings)
            items = list(result.shopping_list.items)

    if args.format == "json":
        print(json.dumps(items, indent=2, ensure_ascii=False))
    else:
        print(format_shopping_markdown(items))


def format_shopping_markdown(items: list[dict]) -> str:
    by_category: dict[str, list[dict]] = {}
    for item in items:
        by_category.setdefault(item.get("category") or "other", []).append(item)

    lines = ["# Shopping List", ""]
    for category in sorted(by_category):
        lines.append(f"## {category.capitalize()}")
        for item in by_category[category]:
            qty = f" ({item['quantity']})" if item.get("quantity") else ""
            lines.append(f"- [ ] {item['name']}{qty}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def cmd_show(args: argparse.Namespace) -> None:
    from rich.table import Table

    from portion_planner.store import PersonStore, PlanStore, SnapshotStore

    config = load_settings(args)
    console = _stdout()
    with open_session(config) as session:
        plans = PlanStore(session)
        if args.plan_id is None:
            table = Table(title="Meal plans")
            for column in ("ID", "Name", "Start", "End", "Days", "Active"):
                table.add_column(column)
            for plan in plans.list_plans():
                table.add_row(
                    str(plan.id),
                    plan.name,
                    plan.start_date.isoformat(),
                    plan.end_date.isoformat(),
                    str(len(plan.days)),
                    "yes" if plan.is_active else "no",
                )
            console.print(table)
            return

        plan = plans.require_plan(args.plan_id)
        persons = PersonStore(session, config).list_for_plan(plan.id)
        snapshots = SnapshotStore(session)

        table = Table(title=f"{plan.name} ({plan.start_date} - {plan.end_date})")
        table.add_column("Day")
        table.add_column("Meal")
        table.add_column("Recipe")
        table.add_column("kcal", justify="right")
        for person in persons:
            table.add_column(f"{person.name} ({person.target_calories})", justify="right")

        for day in plan.days:
            for i, entry in enumerate(day.ordered_entries()):
                scaled = {s.person_id: s for s in snapshots.list_for_entry(entry.id)}
                per_person = []
                for person in persons:
                    s = scaled.get(person.id)
                    per_person.append(
                        f"{s.scaled_calories} (x{s.scaling_factor:.2f})" if s else "-"
                    )
                table.add_row(
                    day.label if i == 0 else "",
                    entry.category.value,
                    entry.recipe.name,
                    str(entry.recipe.calories),
                    *per_person,
                )
        console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portion-planner",
        description="Multi-person meal planning with per-person portion scaling",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML settings (default: ./portion-planner.yaml if present)",
    )
    parser.add_argument("--database-url", type=str, default=None, help="SQLAlchemy database URL")
    parser.add_argument(
        "--provider",
        choices=["claude-cli", "anthropic", "none"],
        default=None,
        help="AI provider for scaling and shopping lists",
    )
    parser.add_argument("--model", type=str, default=None, help="AI model name")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Logging verbosity (default: info)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # init-db
    p_init = sub.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    # import
    p_import = sub.add_parser("import", help="Import recipe markdown files")
    p_import.add_argument("directory", type=str, help="Directory of recipe .md files")
    p_import.add_argument("--limit", type=int, default=None, help="Process only N files")
    p_import.add_argument(
        "--dry-run", action="store_true", help="Print stats without writing"
    )
    p_import.set_defaults(func=cmd_import)

    # create-plan
    p_plan = sub.add_parser("create-plan", help="Create a meal plan with empty days")
    p_plan.add_argument("name", type=str)
    p_plan.add_argument("--start", type=parse_date, required=True, help="YYYY-MM-DD")
    p_plan.add_argument("--end", type=parse_date, default=None, help="YYYY-MM-DD")
    p_plan.add_argument("--days", type=int, default=7, help="Number of days (1-31)")
    p_plan.set_defaults(func=cmd_create_plan)

    # add-person
    p_person = sub.add_parser("add-person", help="Add a person to a plan")
    p_person.add_argument("plan_id", type=int)
    p_person.add_argument("name", type=str)
    p_person.add_argument("calories", type=int, help="Daily calorie target")
    p_person.set_defaults(func=cmd_add_person)

    # generate
    p_gen = sub.add_parser("generate", help="Fill plan days with recipes")
    p_gen.add_argument("plan_id", type=int)
    p_gen.add_argument(
        "--categories", type=str, help="Comma-separated meal categories"
    )
    p_gen.add_argument("--per-day", type=int, default=None, help="Recipes per category per day")
    p_gen.add_argument(
        "--calories", type=int, default=None, help="Optimise days toward this calorie target"
    )
    p_gen.add_argument("--margin", type=int, default=None, help="Allowed calorie deviation")
    p_gen.add_argument(
        "--no-scale", action="store_true", help="Do not scale portions after generating"
    )
    p_gen.set_defaults(func=cmd_generate)

    # scale
    p_scale = sub.add_parser("scale", help="Scale plan recipes for each person")
    p_scale.add_argument("plan_id", type=int)
    p_scale.add_argument(
        "--reset", action="store_true", help="Delete existing scaled recipes and redo all"
    )
    p_scale.add_argument("--entry", type=int, default=None, help="Scale only this entry")
    p_scale.add_argument(
        "--tolerance", type=int, default=None, help="Calories within which no scaling happens"
    )
    p_scale.set_defaults(func=cmd_scale)

    # shopping-list
    p_shop = sub.add_parser("shopping-list", help="Generate the plan's shopping list")
    p_shop.add_argument("plan_id", type=int)
    p_shop.add_argument(
        "--show", action="store_true", help="Print the saved list instead of regenerating"
    )
    p_shop.add_argument(
        "--format", type=str, choices=["json", "markdown"], default="markdown"
    )
    p_shop.set_defaults(func=cmd_shopping_list)

    # show
    p_show = sub.add_parser("show", help="List plans, or show one plan")
    p_show.add_argument("plan_id", type=int, nargs="?", default=None)
    p_show.set_defaults(func=cmd_show)

    return parser


def main() -> None:
    from rich.markup import escape

    from portion_planner.errors import PlannerError
    from portion_planner.log import setup_logging, stderr_console

    parser = build_parser()
    args = parser.parse_args()

    log_file = Path(args.log_file) if args.log_file else None
    setup_logging(level=args.log_level, log_file=log_file)

    try:
        args.func(args)
    except PlannerError as e:
        stderr_console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


if __name__ == "__main__":
    main()
