"""Document assembly — orders sections, builds the TOC, and splices rule bodies verbatim."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .dividers import RULE, TOC, Slot, get_policy
from .manifest import Manifest, ResolvedSection
from .metadata import RuleRecord

logger = logging.getLogger(__name__)

ABSTRACT_HEADING = "## Abstract"
TOC_HEADING = "## Table of Contents"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_LABEL_SPECIAL_RE = re.compile(r"([\\\[\]])")
_LABEL_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True)
class TocEntry:
    """One table-of-contents link. Level 1 is a section, level 2 a rule."""
    label: str
    anchor: str
    level: int = 1


@dataclass
class CompiledDocument:
    """The fully assembled document, ready to render."""
    header: str
    abstract: str
    table_of_contents: list[TocEntry]
    sections: list[ResolvedSection]
    divider: str
    divider_policy: str

    @property
    def rule_count(self) -> int:
        return sum(len(s.rules) for s in self.sections)


def slugify(title: str) -> str:
    """Convert a heading title to a link-safe anchor.

    Lower-cases, collapses every run of non-alphanumeric characters into a
    single hyphen, and trims hyphens from both ends. Two titles may slug to
    the same anchor; that collision is left for the validator to report.
    """
    return _NON_ALNUM_RE.sub("-", title.lower()).strip("-")


def escape_label(label: str) -> str:
    """Backslash-escape the characters that would end a link label early."""
    return _LABEL_SPECIAL_RE.sub(r"\\\1", label)


def unescape_label(label: str) -> str:
    return _LABEL_ESCAPE_RE.sub(r"\1", label)


def section_heading_title(index: int, section: ResolvedSection) -> str:
    """Heading text for the section at 1-based position ``index``."""
    return f"{index}. {section.descriptor.title}"


def build_table_of_contents(
    sections: list[ResolvedSection], include_rules: bool = True
) -> list[TocEntry]:
    """One entry per section, optionally followed by its rules."""
    entries: list[TocEntry] = []
    for index, section in enumerate(sections, start=1):
        label = section_heading_title(index, section)
        entries.append(TocEntry(label=label, anchor=slugify(label), level=1))
        if include_rules:
            for rule in section.rules:
                entries.append(
                    TocEntry(label=rule.title, anchor=slugify(rule.title), level=2)
                )
    return entries


def compose_header(manifest: Manifest) -> str:
    """Build the document header: title, version block, optional note."""
    lines = [f"# {manifest.title or 'Rules'}"]

    byline: list[str] = []
    if manifest.version:
        byline.append(f"**Version {manifest.version}**")
    if manifest.organization:
        byline.append(manifest.organization)
    if manifest.date:
        byline.append(manifest.date)
    if byline:
        lines.append("")
        # Two trailing spaces force markdown line breaks inside the block.
        lines.append("  \n".join(byline))

    if manifest.note:
        lines.append("")
        lines.extend(f"> {line}".rstrip() for line in manifest.note.splitlines())

    return "\n".join(lines)


def assemble_document(
    manifest: Manifest,
    sections: list[ResolvedSection],
    divider_policy: str | None = None,
) -> CompiledDocument:
    """Assemble resolved sections into a CompiledDocument.

    Args:
        manifest: Loaded manifest (header fields, divider settings).
        sections: Sections in output order, each with its ordered rules.
        divider_policy: Policy name overriding the manifest's setting.

    Raises:
        ValueError: If ``divider_policy`` names no registered policy.
    """
    policy_name = divider_policy or manifest.divider_policy
    get_policy(policy_name)

    toc = build_table_of_contents(sections, include_rules=manifest.toc_rules)
    document = CompiledDocument(
        header=compose_header(manifest),
        abstract=manifest.abstract,
        table_of_contents=toc,
        sections=list(sections),
        divider=manifest.divider,
        divider_policy=policy_name,
    )
    logger.debug(
        "Assembled %d sections, %d rules, %d TOC entries (divider policy %s)",
        len(document.sections), document.rule_count, len(toc), policy_name,
    )
    return document


def _impact_line(level: str, description: str = "") -> str:
    if description:
        return f"**Impact: {level} ({description})**"
    return f"**Impact: {level}**"


def _splice(body: str) -> str:
    """Trim blank lines at the splice points only. Interior text is untouched."""
    return body.lstrip("\r\n").rstrip("\r\n")


def render_toc(entries: list[TocEntry]) -> str:
    if not entries:
        return TOC_HEADING
    lines = [TOC_HEADING, ""]
    for entry in entries:
        indent = "  " * (entry.level - 1)
        lines.append(f"{indent}- [{escape_label(entry.label)}](#{entry.anchor})")
    return "\n".join(lines)


def render_section_heading(index: int, section: ResolvedSection) -> str:
    descriptor = section.descriptor
    parts = [
        f"## {section_heading_title(index, section)}",
        _impact_line(descriptor.impact_level),
    ]
    if descriptor.description:
        parts.append(descriptor.description)
    return "\n\n".join(parts)


def render_rule(rule: RuleRecord, section: ResolvedSection) -> str:
    """Render one rule: synthesized heading, impact line, verbatim body."""
    level = rule.impact_level or section.descriptor.impact_level
    parts = [f"### {rule.title}", _impact_line(level, rule.impact_description)]
    body = _splice(rule.body)
    if body:
        parts.append(body)
    return "\n\n".join(parts)


def render_document(document: CompiledDocument) -> str:
    """Render a CompiledDocument to markdown text.

    Blocks are joined by one blank line. A section heading is emitted
    directly before its first rule, after any divider that precedes that
    rule; headings of sections without rules follow the previous block.
    """
    policy = get_policy(document.divider_policy)

    blocks: list[str] = [document.header]
    if document.abstract:
        blocks.append(f"{ABSTRACT_HEADING}\n\n{document.abstract}")
    blocks.append(render_toc(document.table_of_contents))

    prev = Slot(TOC)
    pending: list[str] = []
    for section_idx, section in enumerate(document.sections):
        pending.append(render_section_heading(section_idx + 1, section))
        for rule_idx, rule in enumerate(section.rules):
            slot = Slot(RULE, section_idx, rule_idx)
            if policy(prev, slot):
                blocks.append(document.divider)
            blocks.extend(pending)
            pending = []
            blocks.append(render_rule(rule, section))
            prev = slot

    if policy(prev, None):
        blocks.append(document.divider)
    blocks.extend(pending)

    return "\n\n".join(blocks) + "\n"
