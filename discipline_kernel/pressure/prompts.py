"""
Prompt content table for the pressure levels.

Copy is data driven by level. As the level rises, prompts must become more
urgent and more frequent, and shorter with fewer options. Comfort or
motivational language is never allowed at any level.
"""

import re
from typing import Dict, List

from discipline_kernel.errors import ValidationError
from discipline_kernel.models.pressure import PressureLevel, PromptSpec

BANNED_PHRASES: List[str] = [
    "you got this",
    "you've got this",
    "you can do it",
    "believe in yourself",
    "don't worry",
    "no worries",
    "no pressure",
    "take your time",
    "take a break",
    "it's okay",
    "it's ok",
    "that's okay",
    "relax",
    "be kind to yourself",
    "proud of you",
    "great job",
    "well done",
    "keep it up",
    "almost there",
    "you deserve",
    "tomorrow is another day",
]


DEFAULT_PROMPTS: Dict[PressureLevel, PromptSpec] = {
    PressureLevel.P0: PromptSpec(
        level=PressureLevel.P0,
        tone="neutral",
        urgency=0,
        message="Obligation bound. The system is locked until every required unit is logged.",
        options=["LOG_EXECUTION", "CONFIRM_COMPLETION", "VIEW_CURRENT_OBLIGATION", "VIEW_TIME_REMAINING"],
        cadence_seconds=None,
    ),
    PressureLevel.P1: PromptSpec(
        level=PressureLevel.P1,
        tone="firm",
        urgency=1,
        message="A quarter of the window is gone. Units remain unlogged.",
        options=["LOG_EXECUTION", "CONFIRM_COMPLETION", "VIEW_TIME_REMAINING"],
        cadence_seconds=600,
    ),
    PressureLevel.P2: PromptSpec(
        level=PressureLevel.P2,
        tone="direct",
        urgency=2,
        message="Half the window is gone. Execute now.",
        options=["LOG_EXECUTION", "CONFIRM_COMPLETION"],
        cadence_seconds=300,
    ),
    PressureLevel.P3: PromptSpec(
        level=PressureLevel.P3,
        tone="critical",
        urgency=3,
        message="Failure is close. Execute.",
        options=["LOG_EXECUTION"],
        cadence_seconds=120,
    ),
    PressureLevel.P4: PromptSpec(
        level=PressureLevel.P4,
        tone="terminal",
        urgency=4,
        message="EXECUTE.",
        options=[],
        cadence_seconds=0,
    ),
}


def find_banned_phrases(text: str) -> List[str]:
    """Return every banned phrase contained in ``text``."""
    normalized = re.sub(r"\s+", " ", text.lower().replace("’", "'"))
    return [p for p in BANNED_PHRASES if re.search(rf"\b{re.escape(p)}\b", normalized)]


def _cadence_rank(cadence_seconds) -> float:
    # Higher = more frequent. Silent levels rank lowest, continuous highest.
    if cadence_seconds is None:
        return -1.0
    if cadence_seconds == 0:
        return float("inf")
    return 1.0 / cadence_seconds


def validate_prompt_table(table: Dict[PressureLevel, PromptSpec]) -> None:
    """
    Check a prompt table. Raises ValidationError describing the first problem.
    """
    missing = [lvl.value for lvl in PressureLevel if lvl not in table]
    if missing:
        raise ValidationError(f"Prompt table missing levels: {', '.join(missing)}")

    for level, spec in table.items():
        if spec.level != level:
            raise ValidationError(
                f"Prompt keyed {level.value} declares level {spec.level.value}"
            )
        for text in [spec.message, *spec.options]:
            banned = find_banned_phrases(text)
            if banned:
                raise ValidationError(
                    f"Prompt {level.value} contains banned phrase(s): {', '.join(banned)}"
                )

    ordered = [table[lvl] for lvl in sorted(PressureLevel, key=lambda l: l.rank)]
    for lower, higher in zip(ordered, ordered[1:]):
        pair = f"{lower.level.value}->{higher.level.value}"
        if higher.urgency <= lower.urgency:
            raise ValidationError(f"Urgency must strictly increase ({pair})")
        if _cadence_rank(higher.cadence_seconds) <= _cadence_rank(lower.cadence_seconds):
            raise ValidationError(f"Prompt frequency must strictly increase ({pair})")
        if len(higher.message) >= len(lower.message):
            raise ValidationError(f"Prompt length must strictly decrease ({pair})")
        if len(higher.options) >= len(lower.options):
            raise ValidationError(f"Prompt options must strictly decrease ({pair})")
