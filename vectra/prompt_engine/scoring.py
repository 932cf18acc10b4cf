"""Heuristic 0-100 quality score for compiled prompts.

The score is a presentation signal only; nothing gates on it. Weights come
from the ``scoring`` config section so deployments can tune them without code
changes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Mapping, Optional, Sequence

QUALITY_KEYWORDS = ("lighting", "camera", "composition", "texture", "atmosphere", "detail")


@dataclass(frozen=True)
class ScoringPolicy:
    warning_penalty: int = 5
    unknown_key_penalty: int = 3
    constraint_penalty: int = 5
    missing_subject_penalty: int = 15
    short_prompt_chars: int = 100
    short_prompt_penalty: int = 10
    long_prompt_chars: int = 1500
    long_prompt_penalty: int = 5
    repetition_ratio: float = 0.5
    repetition_penalty: int = 10
    quality_keyword_bonus: int = 5
    filter_bonus_per_filter: int = 2
    filter_bonus_cap: int = 10

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, object]]) -> "ScoringPolicy":
        """Build a policy from a full config mapping or its ``scoring`` section."""

        if not config:
            return cls()
        section = config.get("scoring", config)
        if not isinstance(section, Mapping):
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in section.items() if key in known})


def score_prompt(
    prompt: str,
    *,
    subject: str,
    filter_count: int,
    warnings: Sequence[str],
    unknown_keys: int = 0,
    violations: int = 0,
    policy: Optional[ScoringPolicy] = None,
) -> int:
    policy = policy or ScoringPolicy()
    score = 100
    score -= len(warnings) * policy.warning_penalty
    score -= unknown_keys * policy.unknown_key_penalty
    score -= violations * policy.constraint_penalty

    if not subject:
        score -= policy.missing_subject_penalty

    if len(prompt) < policy.short_prompt_chars:
        score -= policy.short_prompt_penalty
    elif len(prompt) > policy.long_prompt_chars:
        score -= policy.long_prompt_penalty

    words = [word for word in re.split(r"\s+", prompt) if word]
    if words:
        unique_ratio = len({word.lower() for word in words}) / len(words)
        if unique_ratio < policy.repetition_ratio:
            score -= policy.repetition_penalty

    lowered = prompt.lower()
    if any(keyword in lowered for keyword in QUALITY_KEYWORDS):
        score += policy.quality_keyword_bonus

    if filter_count > 0:
        score += min(filter_count * policy.filter_bonus_per_filter, policy.filter_bonus_cap)

    return max(0, min(100, int(round(score))))
