"""Divider placement policy shared by the assembler and the validator.

The rendered document is laid out as a sequence of slots: the table of
contents followed by every rule in section order. A policy is a pure
function ``policy(prev, next) -> bool`` answering whether a divider sits in
the gap after ``prev``; ``next`` is ``None`` for the gap after the final
slot. The assembler asks the policy at each gap while rendering, and
``count_dividers`` walks the same slots to produce the expected count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

TOC = "toc"
RULE = "rule"


@dataclass(frozen=True)
class Slot:
    """One divider-separable block of the rendered document."""
    kind: str
    section: int = -1
    rule: int = -1


DividerPolicy = Callable[[Slot, "Slot | None"], bool]


def between_rules(prev: Slot, nxt: Slot | None) -> bool:
    """One divider after the TOC and between every pair of adjacent rules.

    Section boundaries are treated like any other rule-to-rule transition,
    giving ``1 + (total_rules - 1)`` dividers when there is at least one rule.
    """
    return nxt is not None


def between_sections(prev: Slot, nxt: Slot | None) -> bool:
    """One divider after the TOC and one wherever the section changes."""
    if nxt is None:
        return False
    return prev.kind == TOC or prev.section != nxt.section


POLICIES: dict[str, DividerPolicy] = {
    "between-rules": between_rules,
    "between-sections": between_sections,
}

DEFAULT_POLICY = "between-rules"


def get_policy(name: str | None) -> DividerPolicy:
    """Look up a registered policy by name (``None`` selects the default).

    Raises:
        ValueError: If no policy is registered under ``name``.
    """
    if name is None:
        name = DEFAULT_POLICY
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown divider policy '{name}'. "
            f"Must be one of: {', '.join(sorted(POLICIES))}."
        ) from None


def layout_slots(rule_counts: list[int]) -> list[Slot]:
    """Build the slot sequence for sections holding ``rule_counts`` rules each."""
    slots = [Slot(TOC)]
    for section_idx, count in enumerate(rule_counts):
        for rule_idx in range(count):
            slots.append(Slot(RULE, section_idx, rule_idx))
    return slots


def count_dividers(rule_counts: list[int], policy: DividerPolicy) -> int:
    """Number of dividers ``policy`` places in a document with these rule counts."""
    slots = layout_slots(rule_counts)
    total = 0
    for idx, slot in enumerate(slots):
        nxt = slots[idx + 1] if idx + 1 < len(slots) else None
        if policy(slot, nxt):
            total += 1
    return total
