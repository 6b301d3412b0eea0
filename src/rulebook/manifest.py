"""Section manifest — loads section descriptors from YAML and resolves rules into sections."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import read_source
from .dividers import DEFAULT_POLICY, POLICIES
from .errors import ManifestParseError, UnknownSectionError
from .metadata import METADATA_DELIMITER, RuleRecord

logger = logging.getLogger(__name__)

DEFAULT_IMPACT_LEVELS: tuple[str, ...] = (
    "CRITICAL",
    "HIGH",
    "MEDIUM-HIGH",
    "MEDIUM",
    "LOW-MEDIUM",
    "LOW",
)

DEFAULT_DIVIDER = "***"


@dataclass(frozen=True)
class SectionDescriptor:
    """A single section definition from the manifest."""
    id: str
    order: int
    title: str
    impact_level: str
    description: str
    rule_file_prefixes: tuple[str, ...]


@dataclass(frozen=True)
class ResolvedSection:
    """A section descriptor together with the rules assigned to it."""
    descriptor: SectionDescriptor
    rules: tuple[RuleRecord, ...] = ()


@dataclass
class Manifest:
    """Complete manifest: document settings plus ordered section descriptors."""
    title: str
    version: str
    organization: str
    date: str
    note: str
    abstract: str
    impact_levels: tuple[str, ...]
    divider: str
    divider_policy: str
    toc_rules: bool
    sections: list[SectionDescriptor] = field(default_factory=list)


def _ordered_unique(values: list[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for v in values:
        seen.setdefault(v, None)
    return tuple(seen)


def _parse_section(
    raw: Any, position: int, impact_levels: tuple[str, ...], errors: list[str]
) -> SectionDescriptor | None:
    """Build one descriptor, appending any problems to ``errors``."""
    label = f"sections[{position}]"
    if not isinstance(raw, dict):
        errors.append(f"{label} must be a mapping.")
        return None

    section_id = str(raw.get("id") or "").strip()
    if not section_id:
        errors.append(f"{label}: id is required and must not be empty.")
        return None
    label = f"section '{section_id}'"

    order = raw.get("order")
    if order is None:
        errors.append(f"{label}: order is required.")
    elif isinstance(order, bool) or not isinstance(order, int):
        errors.append(f"{label}: order must be an integer, got {order!r}.")
        order = None

    impact = str(raw.get("impact") or "").strip().upper()
    if not impact:
        errors.append(f"{label}: impact level is required and must not be empty.")
    elif impact not in impact_levels:
        errors.append(
            f"{label}: impact level '{impact}' is not valid. "
            f"Must be one of: {', '.join(impact_levels)}."
        )

    prefixes_raw = raw.get("prefixes", [section_id])
    if isinstance(prefixes_raw, str):
        prefixes_raw = [prefixes_raw]
    if not isinstance(prefixes_raw, list):
        errors.append(f"{label}: prefixes must be a list of strings.")
        prefixes_raw = []
    prefixes = [str(p).strip() for p in prefixes_raw]
    if any(not p for p in prefixes):
        errors.append(f"{label}: prefixes must not be empty strings.")
        prefixes = [p for p in prefixes if p]

    if order is None or not impact:
        return None

    return SectionDescriptor(
        id=section_id,
        order=order,
        title=str(raw.get("title") or section_id).strip(),
        impact_level=impact,
        description=str(raw.get("description") or "").strip(),
        rule_file_prefixes=_ordered_unique(prefixes),
    )


def parse_manifest(text: str, source: str = "<string>") -> Manifest:
    """Parse manifest YAML text into a Manifest.

    Every structural problem in the manifest is collected before raising,
    so a single run reports them all.

    Raises:
        ManifestParseError: On invalid YAML, duplicate ids, missing or
            duplicate order values, missing impact levels, a non-boolean
            ``toc_rules``, an unknown divider policy, or a divider that
            collides with the metadata delimiter.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestParseError(source, [f"invalid YAML: {e}"]) from e

    if not isinstance(data, dict):
        raise ManifestParseError(source, ["manifest YAML must be a mapping at the top level."])

    errors: list[str] = []

    impact_levels_raw = data.get("impact_levels") or list(DEFAULT_IMPACT_LEVELS)
    if not isinstance(impact_levels_raw, list):
        errors.append("impact_levels must be a list.")
        impact_levels_raw = list(DEFAULT_IMPACT_LEVELS)
    impact_levels = _ordered_unique([str(lvl).strip().upper() for lvl in impact_levels_raw])

    divider = str(data.get("divider") or DEFAULT_DIVIDER).strip()
    if divider == METADATA_DELIMITER:
        errors.append(
            f"divider '{divider}' collides with the metadata delimiter."
        )

    divider_policy = str(data.get("divider_policy") or DEFAULT_POLICY)
    if divider_policy not in POLICIES:
        errors.append(
            f"divider_policy '{divider_policy}' is not valid. "
            f"Must be one of: {', '.join(sorted(POLICIES))}."
        )

    toc_rules = data.get("toc_rules", True)
    if not isinstance(toc_rules, bool):
        errors.append(f"toc_rules must be true or false, got {toc_rules!r}.")

    raw_sections = data.get("sections")
    if not isinstance(raw_sections, list) or not raw_sections:
        errors.append("At least one section must be defined.")
        raw_sections = []

    sections: list[SectionDescriptor] = []
    seen_ids: set[str] = set()
    seen_orders: dict[int, str] = {}
    prefix_owner: dict[str, str] = {}

    for position, raw in enumerate(raw_sections):
        descriptor = _parse_section(raw, position, impact_levels, errors)
        if descriptor is None:
            continue

        if descriptor.id in seen_ids:
            errors.append(f"section '{descriptor.id}': duplicate id.")
            continue
        seen_ids.add(descriptor.id)

        if descriptor.order in seen_orders:
            errors.append(
                f"section '{descriptor.id}': order {descriptor.order} is already "
                f"used by section '{seen_orders[descriptor.order]}'."
            )
        else:
            seen_orders[descriptor.order] = descriptor.id

        for prefix in descriptor.rule_file_prefixes:
            if prefix in prefix_owner:
                logger.warning(
                    "%s: prefix '%s' of section '%s' is shadowed by section '%s'",
                    source, prefix, descriptor.id, prefix_owner[prefix],
                )
            else:
                prefix_owner[prefix] = descriptor.id

        sections.append(descriptor)

    if errors:
        raise ManifestParseError(source, errors)

    return Manifest(
        title=str(data.get("title") or "").strip(),
        version=str(data.get("version") or "").strip(),
        organization=str(data.get("organization") or "").strip(),
        date=str(data.get("date") or "").strip(),
        note=str(data.get("note") or "").strip(),
        abstract=str(data.get("abstract") or "").strip(),
        impact_levels=impact_levels,
        divider=divider,
        divider_policy=divider_policy,
        toc_rules=toc_rules,
        sections=sections,
    )


def load_manifest(path: str | Path) -> Manifest:
    """Load a manifest from a YAML file.

    Raises:
        FileNotFoundError: If the manifest file does not exist.
        ManifestParseError: If the manifest is malformed.
    """
    path = Path(path)
    return parse_manifest(read_source(path), path.name)


def _prefix_position(descriptor: SectionDescriptor, stem: str) -> int | None:
    for idx, prefix in enumerate(descriptor.rule_file_prefixes):
        if stem == prefix or stem.startswith(prefix + "-"):
            return idx
    return None


def match_section(
    sections: list[SectionDescriptor], filename: str
) -> SectionDescriptor | None:
    """Find the section whose prefixes claim ``filename``.

    The file stem matches prefix ``p`` when it equals ``p`` or starts with
    ``p-``. First match wins in manifest order.
    """
    stem = Path(filename).stem
    for descriptor in sections:
        if _prefix_position(descriptor, stem) is not None:
            return descriptor
    return None


def resolve_sections(
    manifest: Manifest, rules: list[RuleRecord]
) -> list[ResolvedSection]:
    """Assign every rule to its section and order the result.

    Sections come back sorted by ``order``. Within a section, rules are
    ordered by matching prefix position, then title, then file name.

    Raises:
        UnknownSectionError: If any rule matches no section. All unmatched
            files are named.
    """
    assigned: dict[str, list[tuple[int, RuleRecord]]] = {
        s.id: [] for s in manifest.sections
    }
    unmatched: list[str] = []

    for rule in rules:
        descriptor = match_section(manifest.sections, rule.source)
        if descriptor is None:
            unmatched.append(rule.source)
            continue

        position = _prefix_position(descriptor, Path(rule.source).stem)
        assigned[descriptor.id].append((position, rule))

        if rule.impact_level and rule.impact_level not in manifest.impact_levels:
            logger.warning(
                "%s: impact level '%s' is not one of %s",
                rule.source, rule.impact_level, ", ".join(manifest.impact_levels),
            )

    if unmatched:
        raise UnknownSectionError(unmatched)

    resolved: list[ResolvedSection] = []
    for descriptor in sorted(manifest.sections, key=lambda s: s.order):
        members = sorted(
            assigned[descriptor.id],
            key=lambda pr: (pr[0], pr[1].title.casefold(), pr[1].source),
        )
        if not members:
            logger.warning("Section '%s' has no rules", descriptor.id)
        resolved.append(
            ResolvedSection(descriptor=descriptor, rules=tuple(r for _, r in members))
        )

    logger.debug(
        "Resolved %d rules into %d sections", len(rules), len(resolved)
    )
    return resolved
