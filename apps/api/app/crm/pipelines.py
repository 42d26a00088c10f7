from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any

from app.metrics import observe_pipeline_stage_parse_failure


logger = logging.getLogger("app.crm.pipelines")

DEFAULT_STAGE_NAME_TEMPLATE = "Stage {number}"


@dataclass(frozen=True)
class PipelineStageDescriptor:
    name: str
    color: str | None = None
    probability: int = 0


def clamp_probability(value: int) -> int:
    return min(100, max(0, value))


def ramp_probability(index: int, total: int) -> int:
    """Win probability implied by a stage's position in a pipeline of ``total`` stages.

    Percentages are rounded up, so three stages give 34, 67 and 100 and the last
    stage always lands on 100. This is a ceiling, not nearest rounding:
    six stages give 17, 34, 50, 67, 84, 100 where nearest rounding would give
    17, 33, 50, 67, 83, 100.
    """
    if total <= 0:
        return 0
    return clamp_probability(-(-(index + 1) * 100 // total))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _reject_constant(token: str) -> Any:
    raise ValueError(f"unsupported JSON constant {token}")


def _explicit_probability(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, int):
        return clamp_probability(value)
    # 1e400 decodes to inf; non-finite numbers fall back to the ramp.
    if not math.isfinite(value):
        return None
    return clamp_probability(_round_half_up(value))


def _from_names(items: list[Any]) -> list[PipelineStageDescriptor]:
    total = len(items)
    return [
        PipelineStageDescriptor(name=_as_text(item), probability=ramp_probability(index, total))
        for index, item in enumerate(items)
    ]


def _from_objects(items: list[Any], default_name_template: str) -> list[PipelineStageDescriptor]:
    total = len(items)
    descriptors: list[PipelineStageDescriptor] = []
    for index, item in enumerate(items):
        fields: dict[str, Any] = item if isinstance(item, dict) else {}
        name = fields.get("name")
        color = fields.get("color")
        probability = _explicit_probability(fields.get("probability"))
        descriptors.append(
            PipelineStageDescriptor(
                name=_as_text(name) if name is not None else default_name_template.format(number=index + 1),
                color=_as_text(color) if color is not None else None,
                probability=probability if probability is not None else ramp_probability(index, total),
            )
        )
    return descriptors


def _descriptors(parsed: Any, default_name_template: str) -> list[PipelineStageDescriptor]:
    if not isinstance(parsed, list) or not parsed:
        return []

    first = parsed[0]
    if isinstance(first, str):
        return _from_names(parsed)
    if isinstance(first, dict):
        return _from_objects(parsed, default_name_template)
    return []


def parse_pipeline_stages(
    raw: str | None,
    *,
    default_name_template: str = DEFAULT_STAGE_NAME_TEMPLATE,
) -> list[PipelineStageDescriptor]:
    """Decode a pipeline's stored stage list into ordered descriptors.

    The column holds either a JSON array of names or a JSON array of
    ``{"name", "color", "probability"}`` objects; the first element decides
    which. Absent or unreadable configuration yields an empty list, never an
    exception.
    """
    if not raw:
        return []

    # Deeply nested arrays exhaust the recursion limit in both decoding and
    # re-encoding non-string names, so both sit behind the same guard.
    try:
        parsed = json.loads(raw, parse_constant=_reject_constant)
        return _descriptors(parsed, default_name_template)
    except (ValueError, RecursionError) as exc:
        observe_pipeline_stage_parse_failure()
        logger.warning("pipeline.stages.parse_failed", extra={"error": str(exc)})
        return []


def serialize_pipeline_stages(stages: str | list[Any]) -> str:
    if isinstance(stages, str):
        return stages
    return json.dumps(stages, ensure_ascii=False)
