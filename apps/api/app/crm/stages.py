from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum


class StageCategory(str, Enum):
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"
    OPEN = "open"


CLOSED_WON_EXACT = (
    "closed_won",
    "закрыто и реализованное",
    "закрыто и реализовано",
    "закрыта (успех)",
    "закрыто успешно",
)

CLOSED_LOST_EXACT = (
    "closed_lost",
    "закрыто пропала потребность",
    "закрыто проиграно",
    "закрыто не реализовано",
    "закрыта (провал)",
    "закрыто проигрыш",
)

CLOSED_WON_KEYWORDS = (
    ("закрыт", "реализ"),
    ("закрыт", "усп"),
)

CLOSED_LOST_KEYWORDS = (
    ("закрыт", "пропал"),
    ("закрыт", "потреб"),
    ("закрыт", "проиг"),
    ("закрыт", "не реал"),
)


StageMatcher = Callable[[str], bool]


def normalize_stage(stage: str | None) -> str:
    if not stage:
        return ""
    return str(stage).strip().lower()


def _exact(options: Sequence[str]) -> StageMatcher:
    def matches(value: str) -> bool:
        return value in options

    return matches


def _keyword_sets(keyword_sets: Sequence[Sequence[str]]) -> StageMatcher:
    def matches(value: str) -> bool:
        return any(all(keyword in value for keyword in keywords) for keywords in keyword_sets)

    return matches


# Evaluated in order, first match wins; won rules stay ahead of lost rules.
STAGE_RULES: tuple[tuple[StageMatcher, StageCategory], ...] = (
    (_exact(CLOSED_WON_EXACT), StageCategory.CLOSED_WON),
    (_keyword_sets(CLOSED_WON_KEYWORDS), StageCategory.CLOSED_WON),
    (_exact(CLOSED_LOST_EXACT), StageCategory.CLOSED_LOST),
    (_keyword_sets(CLOSED_LOST_KEYWORDS), StageCategory.CLOSED_LOST),
)


def classify_stage(stage: str | None) -> StageCategory:
    """Bucket a free-text deal stage into won, lost or open.

    Labels are author-entered, so the match is heuristic: exact phrases first,
    then groups of word roots that must all be present. Anything unrecognised,
    including an empty label, is treated as an open deal.
    """
    normalized = normalize_stage(stage)
    category = StageCategory.OPEN
    if normalized:
        for matches, rule_category in STAGE_RULES:
            if matches(normalized):
                category = rule_category
                break
    return category


get_stage_category = classify_stage


def is_closed_won_stage(stage: str | None) -> bool:
    return classify_stage(stage) is StageCategory.CLOSED_WON


def is_closed_lost_stage(stage: str | None) -> bool:
    return classify_stage(stage) is StageCategory.CLOSED_LOST


def is_closed_stage(stage: str | None) -> bool:
    return classify_stage(stage) is not StageCategory.OPEN
