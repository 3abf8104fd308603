"""Job type resolution for submitted instructions."""

from __future__ import annotations

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from typing import Any

from agent_pipeline.pipeline.errors import ValidationError

_WORD_PATTERN = re.compile(r"[a-z0-9]+")


@dataclass(slots=True, frozen=True)
class KeywordRule:
    """Route to ``job_type`` when any keyword appears as a word."""

    job_type: str
    keywords: frozenset[str]


DEFAULT_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        job_type="code-generation",
        keywords=frozenset({"code", "program", "function", "api", "refactor", "implement"}),
    ),
    KeywordRule(
        job_type="data-processing",
        keywords=frozenset({"data", "dataset", "csv", "transform", "process", "etl"}),
    ),
)


def resolve_job_type(  # noqa: PLR0913
    *,
    instruction: str,
    context: Mapping[str, Any] | None,
    explicit: str | None,
    job_types: Collection[str],
    default_job_type: str,
    rules: tuple[KeywordRule, ...] = DEFAULT_RULES,
) -> str:
    """Pick the job type for a submission.

    Order: explicit argument, ``context["job_type"]``, first keyword rule
    whose job type is registered, then the default.
    """

    if explicit is not None:
        return _normalize(explicit, source="job_type")

    if context is not None and context.get("job_type") is not None:
        value = context["job_type"]
        if not isinstance(value, str):
            raise ValidationError(f"context.job_type must be a string, got {value!r}.")
        return _normalize(value, source="context.job_type")

    words = set(_WORD_PATTERN.findall(instruction.lower()))
    for rule in rules:
        if rule.job_type in job_types and words & rule.keywords:
            return rule.job_type
    return default_job_type


def _normalize(value: str, *, source: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValidationError(f"{source} must be non-empty.")
    return normalized
