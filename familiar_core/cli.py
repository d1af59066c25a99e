"""Command line front-end: ``familiar-calc optimize`` and ``familiar-calc roll``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from .api import analyze_roll, compute_optimal_lineups
from .data import (
    DEFAULT_LINEUP_SIZE,
    DEFAULT_TOP_COMBINATIONS,
    RANKS,
    load_json_document,
    load_optimizer_config,
    parse_bonus_items,
    parse_conditional_bonuses,
    parse_roster,
)
from .models import OptimizedLineup, StrategyResults

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

STRATEGY_TITLES: tuple[tuple[str, str], ...] = (
    ("best_overall", "Best overall"),
    ("best_low", "Best on low rolls"),
    ("best_high", "Best on high rolls"),
    ("best_median", "Best median"),
    ("best_min_variance", "Most consistent"),
    ("best_floor_guarantee", "Best floor"),
    ("best_balanced", "Best balanced"),
    ("best_dice_independent", "Most guaranteed bonuses"),
)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _require_file(path: Path, label: str) -> Path:
    if not path.is_file():
        raise SystemExit(f"Cannot find {label} file at {path!s}")
    return path


def _optional_document(path: Optional[Path]):
    return load_json_document(path) if path is not None else None


def format_lineup(title: str, lineup: Optional[OptimizedLineup]) -> str:
    """Return a one-line summary of a strategy's winning lineup."""

    if lineup is None:
        return f"{title}: -"
    names = ", ".join(familiar.name for familiar in lineup.familiars)
    bonuses = ", ".join(lineup.active_bonus_names) or "none"
    return f"{title}: {names} | score {lineup.score} ({lineup.score_label}) | bonuses: {bonuses}"


def print_strategy_results(results: StrategyResults) -> None:
    for attribute, title in STRATEGY_TITLES:
        print(format_lineup(title, getattr(results, attribute)))


def run_optimize(args: argparse.Namespace) -> None:
    roster = parse_roster(load_json_document(_require_file(args.roster, "roster")))
    bonuses = parse_conditional_bonuses(_optional_document(args.bonuses))
    config = load_optimizer_config(args.config)

    outcome = compute_optimal_lineups(
        roster,
        bonuses,
        lineup_size=args.size,
        config=config,
        exact=args.exact,
        elements=args.elements or None,
        types=args.types or None,
        min_rank=args.min_rank,
    )
    print(
        f"Evaluated {outcome.combination_count} lineups of {outcome.lineup_size} "
        f"from {outcome.pool_size} familiars in {outcome.compute_seconds:.2f}s"
    )
    print_strategy_results(outcome.strategies)


def run_roll(args: argparse.Namespace) -> None:
    familiars = parse_roster(load_json_document(_require_file(args.roster, "lineup")))
    items = parse_bonus_items(_optional_document(args.items))
    bonuses = parse_conditional_bonuses(_optional_document(args.bonuses))

    analysis = analyze_roll(
        args.dice,
        familiars,
        items,
        bonuses,
        args.difficulty,
        top_limit=args.top,
    )
    result = analysis.result
    status = "PASS" if result.passed else "FAIL"
    print(
        f"Roll {'-'.join(str(v) for v in args.dice)}: {result.final_result} "
        f"vs {args.difficulty:g} -> {status} ({result.difference:+g})"
    )
    if result.active_conditional_names:
        print("Active bonuses: " + ", ".join(result.active_conditional_names))

    for suggestion in analysis.suggestions:
        values = ", ".join(str(p.value) for p in suggestion.passing_values) or "none"
        odds = f"{suggestion.odds}%" if suggestion.odds is not None else "-"
        print(
            f"  {suggestion.die_name} (d{suggestion.max_dice}, now {suggestion.current_value}):"
            f" passing values {values}, odds {odds}"
        )
    if analysis.best_option is not None:
        print(f"Best reroll: {analysis.best_option.die_name} ({analysis.best_option.odds}%)")
    elif not result.passed:
        print("No single reroll can pass this difficulty.")

    if analysis.top_combinations:
        print("Most likely passing rolls:")
        for combination in analysis.top_combinations:
            dice = "-".join(str(v) for v in combination.dice)
            print(
                f"  {dice}: score {combination.final_score}, "
                f"{combination.probability:.1f}% chance of rolling at least this"
            )


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Familiar lineup optimizer and roll calculator.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    optimize = subparsers.add_parser("optimize", help="Find the best lineups for each strategy.")
    optimize.add_argument("--roster", type=Path, required=True, help="JSON file with the roster.")
    optimize.add_argument(
        "--bonuses", type=Path, default=None, help="JSON file with additional conditional bonuses."
    )
    optimize.add_argument(
        "--config", type=Path, default=None, help="JSON optimizer configuration (strategy switches)."
    )
    optimize.add_argument(
        "--size",
        type=int,
        default=DEFAULT_LINEUP_SIZE,
        help="Familiars per lineup (default: %(default)s).",
    )
    optimize.add_argument(
        "--exact",
        action="store_true",
        help="Score the overall strategy by exact expected value instead of the average roll.",
    )
    optimize.add_argument(
        "--element", dest="elements", action="append", default=[], help="Keep only this element (repeatable)."
    )
    optimize.add_argument(
        "--type", dest="types", action="append", default=[], help="Keep only this type (repeatable)."
    )
    optimize.add_argument("--min-rank", choices=RANKS, default=None, help="Drop familiars below this rank.")
    optimize.set_defaults(handler=run_optimize)

    roll = subparsers.add_parser("roll", help="Score a roll and suggest rerolls.")
    roll.add_argument("--dice", type=int, nargs="+", required=True, help="Rolled value per familiar.")
    roll.add_argument("--roster", type=Path, required=True, help="JSON file with the lineup, in dice order.")
    roll.add_argument("--difficulty", type=float, required=True, help="Score needed to pass.")
    roll.add_argument("--items", type=Path, default=None, help="JSON file with equipped bonus items.")
    roll.add_argument(
        "--bonuses", type=Path, default=None, help="JSON file with additional conditional bonuses."
    )
    roll.add_argument(
        "--top",
        type=int,
        default=DEFAULT_TOP_COMBINATIONS,
        help="How many likely passing rolls to list (default: %(default)s).",
    )
    roll.set_defaults(handler=run_roll)

    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    try:
        args.handler(args)
    except (ValueError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main(sys.argv[1:])
