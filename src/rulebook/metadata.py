"""Rule file parsing — splits metadata blocks from verbatim markdown bodies."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from . import read_source
from .errors import MetadataParseError

logger = logging.getLogger(__name__)

METADATA_DELIMITER = "---"

# ATX heading: 1-6 hashes, at least one space, optional closing hash run.
_HEADING_RE = re.compile(r"^ {0,3}#{1,6}[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")


@dataclass(frozen=True)
class RuleRecord:
    """A single parsed rule: metadata fields plus the untouched markdown body."""
    title: str
    impact_level: str
    impact_description: str
    tags: frozenset[str]
    body: str
    source: str


def _is_delimiter(line: str) -> bool:
    return line.rstrip() == METADATA_DELIMITER


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def split_metadata(text: str, source: str = "<string>") -> tuple[dict[str, str], str]:
    """Split raw rule text into a flat metadata mapping and the raw body.

    The metadata block must open on the very first line. Text without an
    opening delimiter is all body. The body is returned byte-for-byte,
    including its original line endings.

    Args:
        text: Raw file contents.
        source: File name used in error messages.

    Returns:
        ``(metadata, body)``.

    Raises:
        MetadataParseError: If the block is never closed or holds a line
            that is not ``key: value``.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    lines = text.splitlines(keepends=True)
    if not lines or not _is_delimiter(lines[0]):
        return {}, text

    closing: int | None = None
    for idx in range(1, len(lines)):
        if _is_delimiter(lines[idx]):
            closing = idx
            break

    if closing is None:
        raise MetadataParseError(
            source, "metadata block opened on line 1 is never closed"
        )

    metadata: dict[str, str] = {}
    for idx in range(1, closing):
        stripped = lines[idx].strip()
        if not stripped or stripped.startswith("#"):
            continue

        key, sep, value = stripped.partition(":")
        key = key.strip()
        if not sep or not key:
            raise MetadataParseError(
                source, f"line {idx + 1}: expected 'key: value', got {stripped!r}"
            )

        if key in metadata:
            logger.debug("%s: duplicate metadata key '%s', last value wins", source, key)
        metadata[key] = _unquote(value.strip())

    body = "".join(lines[closing + 1:])
    return metadata, body


def parse_tags(value: str) -> frozenset[str]:
    """Parse a comma-separated tag list. Empty items are dropped."""
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    return frozenset(
        _unquote(t.strip()) for t in value.split(",") if t.strip()
    )


def _leading_heading(body: str) -> tuple[str | None, str]:
    """Return the text of the body's first non-blank line if it is a heading.

    The second element is the body with that heading line (and the blank
    lines that follow it) spliced out. When there is no leading heading the
    body comes back unchanged.
    """
    lines = body.splitlines(keepends=True)
    idx = 0
    while idx < len(lines) and not lines[idx].strip():
        idx += 1
    if idx == len(lines):
        return None, body

    match = _HEADING_RE.match(lines[idx].rstrip("\r\n"))
    if not match:
        return None, body

    rest = idx + 1
    while rest < len(lines) and not lines[rest].strip():
        rest += 1
    return match.group(1).strip(), "".join(lines[rest:])


def _title_from_filename(source: str) -> str:
    stem = Path(source).stem.replace("-", " ").replace("_", " ").strip()
    return stem[:1].upper() + stem[1:]


def parse_rule(text: str, source: str = "<string>") -> RuleRecord:
    """Parse one rule file into a RuleRecord.

    Recognized metadata keys are ``title``, ``impact``, ``impactDescription``
    and ``tags``; anything else is ignored.
    """
    metadata, body = split_metadata(text, source)

    title = metadata.get("title", "").strip()
    heading, without_heading = _leading_heading(body)
    if not title:
        if heading:
            title = heading
            body = without_heading
        else:
            title = _title_from_filename(source)
            logger.warning("%s: no title in metadata or body, using '%s'", source, title)
    elif heading == title:
        body = without_heading

    return RuleRecord(
        title=title,
        impact_level=metadata.get("impact", "").strip().upper(),
        impact_description=metadata.get("impactDescription", "").strip(),
        tags=parse_tags(metadata.get("tags", "")),
        body=body,
        source=source,
    )


def load_rule_file(path: str | Path) -> RuleRecord:
    """Read and parse a single rule file."""
    path = Path(path)
    return parse_rule(read_source(path), path.name)


def load_rules(rules_dir: str | Path) -> list[RuleRecord]:
    """Load every rule file in a directory, sorted by file name.

    Only ``*.md`` files are read; names starting with ``_`` (templates,
    section notes) are skipped.

    Raises:
        FileNotFoundError: If the directory does not exist.
        MetadataParseError: On the first malformed rule file.
    """
    rules_dir = Path(rules_dir)
    if not rules_dir.is_dir():
        raise FileNotFoundError(f"Rules directory not found: {rules_dir}")

    rules: list[RuleRecord] = []
    for path in sorted(rules_dir.glob("*.md")):
        if path.name.startswith("_"):
            logger.debug("Skipping non-rule file %s", path.name)
            continue
        rules.append(load_rule_file(path))

    logger.debug("Loaded %d rule files from %s", len(rules), rules_dir)
    return rules
