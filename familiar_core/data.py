"""Domain constants, JSON document helpers, and mapping-to-record parsers."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Final, Optional

from .models import (
    BonusItem,
    ConditionalBonus,
    Familiar,
    OptimizerConfig,
    RankLike,
    StrategyConfig,
    rank_name,
)

logger = logging.getLogger(__name__)

RANKS: Final[list[str]] = ["Common", "Rare", "Epic", "Unique", "Legendary"]

RANK_DICE_MAP: Final[dict[str, int]] = {
    "Common": 3,
    "Rare": 4,
    "Epic": 5,
    "Unique": 6,
    "Legendary": 6,
}

RANK_ORDER: Final[dict[str, int]] = {name: idx for idx, name in enumerate(RANKS)}

DEFAULT_DIE_SIZE: Final[int] = 3
UNRANKED_DIE_CAP: Final[int] = 6
DEFAULT_LINEUP_SIZE: Final[int] = 3

ASYNC_BATCH_SIZE: Final[int] = 500

FLOOR_RATIO: Final[float] = 0.8
FLOOR_COVERAGE_PERCENT: Final[float] = 80.0
BALANCED_WEIGHTS: Final[tuple[float, float, float]] = (0.25, 0.50, 0.25)

DEFAULT_TOP_COMBINATIONS: Final[int] = 5

STRATEGY_OVERALL: Final[str] = "overall"
STRATEGY_LOW_ROLLS: Final[str] = "lowRolls"
STRATEGY_HIGH_ROLLS: Final[str] = "highRolls"
STRATEGY_MEDIAN: Final[str] = "median"
STRATEGY_MIN_VARIANCE: Final[str] = "minVariance"
STRATEGY_FLOOR_GUARANTEE: Final[str] = "floorGuarantee"
STRATEGY_BALANCED: Final[str] = "balanced"
STRATEGY_DICE_INDEPENDENT: Final[str] = "diceIndependent"

STRATEGY_KEYS: Final[list[str]] = [
    STRATEGY_OVERALL,
    STRATEGY_LOW_ROLLS,
    STRATEGY_HIGH_ROLLS,
    STRATEGY_MEDIAN,
    STRATEGY_MIN_VARIANCE,
    STRATEGY_FLOOR_GUARANTEE,
    STRATEGY_BALANCED,
    STRATEGY_DICE_INDEPENDENT,
]

# snake_case aliases accepted in configuration documents
_STRATEGY_ALIASES: Final[dict[str, str]] = {
    "low_rolls": STRATEGY_LOW_ROLLS,
    "high_rolls": STRATEGY_HIGH_ROLLS,
    "min_variance": STRATEGY_MIN_VARIANCE,
    "floor_guarantee": STRATEGY_FLOOR_GUARANTEE,
    "dice_independent": STRATEGY_DICE_INDEPENDENT,
}

OPTIMIZER_CONFIG_VERSION: Final[str] = "1.0"


def canonical_strategy_key(name: str) -> str:
    """Return the canonical camelCase key for a strategy name.

    Raises
    ------
    ValueError
        If the name does not match any known strategy.
    """

    key = _STRATEGY_ALIASES.get(name, name)
    if key not in STRATEGY_KEYS:
        raise ValueError(f"Unknown strategy '{name}'")
    return key


# ---- JSON documents ---------------------------------------------------------


def load_json_document(path: str | Path | None) -> Any:
    """Read a JSON document, returning ``None`` when it is missing or invalid."""

    if not path:
        return None

    document_path = Path(path)
    try:
        return json.loads(document_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("JSON document %s does not exist", document_path)
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read JSON document %s: %s", document_path, exc)
        return None


def _entries(document: Any, list_key: str) -> list[Mapping[str, Any]]:
    """Accept either a bare list or a ``{list_key: [...]}`` wrapper document."""

    if isinstance(document, Mapping):
        document = document.get(list_key, [])
    if not isinstance(document, list):
        return []
    return [entry for entry in document if isinstance(entry, Mapping)]


def _number(raw: Mapping[str, Any], *keys: str, default: float = 0) -> float:
    for key in keys:
        if key in raw and raw[key] is not None:
            try:
                return float(raw[key])
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Field '{key}' must be numeric, got {raw[key]!r}") from exc
    return default


def _as_int_if_whole(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


# ---- record parsers ---------------------------------------------------------


def conditional_bonus_from_mapping(raw: Mapping[str, Any]) -> ConditionalBonus:
    """Build a :class:`ConditionalBonus` from a stored catalog entry.

    Both the stored camelCase keys (``flatBonus``) and snake_case keys are
    accepted.

    Raises
    ------
    ValueError
        If ``name`` is missing or a numeric field cannot be parsed.
    """

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("Conditional bonus entry is missing a 'name'")
    condition = raw.get("condition", "")
    bonus_id = raw.get("id")
    return ConditionalBonus(
        name=name,
        condition=str(condition) if condition is not None else "",
        flat_bonus=_as_int_if_whole(_number(raw, "flatBonus", "flat_bonus")),
        multiplier_bonus=_number(raw, "multiplierBonus", "multiplier_bonus"),
        id=str(bonus_id) if bonus_id is not None else None,
        rarity=raw.get("rarity"),
        rank=raw.get("rank"),
        color=raw.get("color"),
        pre_patch=bool(raw.get("prePatch", raw.get("pre_patch", False))),
    )


def bonus_item_from_mapping(raw: Mapping[str, Any]) -> BonusItem:
    """Build a :class:`BonusItem` from a stored catalog entry."""

    item_id = raw.get("id")
    name = raw.get("name")
    if item_id is None or not isinstance(name, str):
        raise ValueError("Bonus item entry requires 'id' and 'name'")
    return BonusItem(
        id=str(item_id),
        name=name,
        flat_bonus=_as_int_if_whole(_number(raw, "flatBonus", "flat_bonus")),
        multiplier_bonus=_number(raw, "multiplierBonus", "multiplier_bonus"),
        description=str(raw.get("description", "")),
    )


def familiar_from_mapping(raw: Mapping[str, Any]) -> Familiar:
    """Build a :class:`Familiar` roster record from a stored entry."""

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("Familiar entry is missing a 'name'")
    conditional_raw = raw.get("conditional")
    conditional = (
        conditional_bonus_from_mapping(conditional_raw)
        if isinstance(conditional_raw, Mapping)
        else None
    )
    familiar_id = raw.get("id")
    wave = raw.get("wave")
    rank = raw.get("rank", "Common")
    return Familiar(
        name=name,
        rank=str(rank) if rank is not None else None,
        element=str(raw.get("element", "None")),
        type=str(raw.get("type", "")),
        conditional=conditional,
        id=int(familiar_id) if familiar_id is not None else None,
        wave=int(wave) if wave is not None else None,
        disabled=bool(raw.get("disabled", False)),
    )


def parse_conditional_bonuses(document: Any) -> list[ConditionalBonus]:
    """Parse a conditional-bonus catalog, skipping malformed entries."""

    bonuses: list[ConditionalBonus] = []
    for entry in _entries(document, "bonuses"):
        try:
            bonuses.append(conditional_bonus_from_mapping(entry))
        except ValueError as exc:
            logger.warning("Skipping conditional bonus entry: %s", exc)
    return bonuses


def parse_bonus_items(document: Any) -> list[BonusItem]:
    """Parse a bonus-item catalog, skipping malformed entries."""

    items: list[BonusItem] = []
    for entry in _entries(document, "items"):
        try:
            items.append(bonus_item_from_mapping(entry))
        except ValueError as exc:
            logger.warning("Skipping bonus item entry: %s", exc)
    return items


def parse_roster(document: Any) -> list[Familiar]:
    """Parse a familiar roster, skipping malformed entries."""

    roster: list[Familiar] = []
    for entry in _entries(document, "roster"):
        try:
            roster.append(familiar_from_mapping(entry))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping roster entry: %s", exc)
    return roster


def parse_optimizer_config(document: Any) -> OptimizerConfig:
    """Parse a stored optimizer configuration.

    Missing strategies default to enabled with nothing ignored; unknown
    strategy keys are ignored.
    """

    if not isinstance(document, Mapping):
        return OptimizerConfig()

    raw_strategies = document.get("strategies", {})
    strategies: dict[str, StrategyConfig] = {}
    if isinstance(raw_strategies, Mapping):
        for name, raw in raw_strategies.items():
            try:
                key = canonical_strategy_key(str(name))
            except ValueError:
                logger.debug("Ignoring configuration for unknown strategy %r", name)
                continue
            if not isinstance(raw, Mapping):
                continue
            ignored: Iterable[Any] = raw.get(
                "ignoredConditionalIds", raw.get("ignored_conditional_ids", [])
            ) or []
            strategies[key] = StrategyConfig(
                enabled=bool(raw.get("enabled", True)),
                ignored_conditional_ids=frozenset(str(value) for value in ignored),
            )

    version = document.get("version", OPTIMIZER_CONFIG_VERSION)
    return OptimizerConfig(version=str(version), strategies=strategies)


def load_optimizer_config(path: str | Path | None) -> OptimizerConfig:
    """Load the optimizer configuration, defaulting when the file is absent."""

    return parse_optimizer_config(load_json_document(path))


def rank_index(rank: Optional[RankLike]) -> int:
    """Return the ordinal position of a rank, ``-1`` when unknown."""

    if rank is None:
        return -1
    return RANK_ORDER.get(rank_name(rank), -1)
