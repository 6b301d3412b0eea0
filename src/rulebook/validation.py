"""Structural validation suite for a compiled rule document."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .assembly import TOC_HEADING, section_heading_title, slugify, unescape_label
from .dividers import DividerPolicy, count_dividers, get_policy
from .manifest import ResolvedSection
from .metadata import METADATA_DELIMITER, RuleRecord

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")
_TOC_LINK_RE = re.compile(
    r"^(?P<indent>\s*)[-*]\s+\[(?P<label>(?:\\.|[^\]\\])*)\]\(#(?P<anchor>[^)\s]*)\)"
)


@dataclass
class ValidationIssue:
    """A single structural problem, naming the offending file, section or anchor."""
    check: str
    target: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckResult:
    """Outcome of one structural check."""
    check: str
    passed: bool
    detail: str
    issues: list[ValidationIssue] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Complete validation report for a compiled document."""
    total_sections: int
    total_rules: int
    results: list[CheckResult]

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def checks_run(self) -> list[str]:
        return [r.check for r in self.results]

    @property
    def failed_checks(self) -> list[str]:
        return [r.check for r in self.results if not r.passed]

    @property
    def issues(self) -> list[ValidationIssue]:
        return [issue for r in self.results for issue in r.issues]


@dataclass
class ScannedLine:
    """A document line annotated with its code-fence state."""
    number: int
    text: str
    in_fence: bool
    fence: str | None = None  # fence character when the line opens or closes a fence


@dataclass
class FenceScan:
    lines: list[ScannedLine]
    unclosed: ScannedLine | None = None


def scan_lines(lines: list[str], first_number: int = 1) -> FenceScan:
    """Mark which lines sit inside fenced code blocks.

    A fence closes only on a line of the same character, at least as long
    as the opening run, with nothing after it. Lines that open or close a
    fence count as inside it.
    """
    scanned: list[ScannedLine] = []
    opening: ScannedLine | None = None
    fence_char = ""
    fence_len = 0

    for offset, line in enumerate(lines):
        number = first_number + offset
        match = _FENCE_RE.match(line)

        if opening is None:
            if match and not (match.group(1)[0] == "`" and "`" in match.group(2)):
                fence_char = match.group(1)[0]
                fence_len = len(match.group(1))
                opening = ScannedLine(number, line, True, fence_char)
                scanned.append(opening)
            else:
                scanned.append(ScannedLine(number, line, False))
            continue

        if (
            match
            and match.group(1)[0] == fence_char
            and len(match.group(1)) >= fence_len
            and not match.group(2).strip()
        ):
            scanned.append(ScannedLine(number, line, True, fence_char))
            opening = None
        else:
            scanned.append(ScannedLine(number, line, True))

    return FenceScan(lines=scanned, unclosed=opening)


def _headings(scan: FenceScan) -> list[tuple[int, str, int]]:
    """All ATX headings outside code fences as ``(level, text, line_number)``."""
    found: list[tuple[int, str, int]] = []
    for line in scan.lines:
        if line.in_fence:
            continue
        match = _HEADING_RE.match(line.text)
        if match:
            found.append((len(match.group(1)), match.group(2).strip(), line.number))
    return found


def _generated_headings(
    scan: FenceScan, level: int, expected: list[str]
) -> list[tuple[int, str, int]]:
    """Match headings at ``level`` against the expected titles, in order.

    Returns ``(position in expected, text, line_number)`` for each match.
    A heading is taken only when it equals an expected title at or after
    the last match, so headings written inside rule bodies are not mistaken
    for generated ones and one missing heading does not hide the rest.
    """
    found: list[tuple[int, str, int]] = []
    cursor = 0
    for heading_level, text, number in _headings(scan):
        if heading_level != level:
            continue
        try:
            pos = expected.index(text, cursor)
        except ValueError:
            continue
        found.append((pos, text, number))
        cursor = pos + 1
    return found


def _unmatched(expected: list[str], found: list[tuple[int, str, int]]) -> list[int]:
    matched = {pos for pos, _, _ in found}
    return [pos for pos in range(len(expected)) if pos not in matched]


def check_section_headings(scan: FenceScan, expected: list[str]) -> CheckResult:
    """Every generated section heading must appear, in manifest order."""
    found = _generated_headings(scan, 2, expected)
    detail = f"{len(found)} section headings, expected {len(expected)}"
    issues = [
        ValidationIssue(
            check="section_headings",
            target=f"section '{expected[pos]}'",
            message=f"Section heading '## {expected[pos]}' not found",
            details={"position": pos + 1},
        )
        for pos in _unmatched(expected, found)
    ]
    return CheckResult("section_headings", not issues, detail, issues)


def check_rule_headings(scan: FenceScan, rules: list[RuleRecord]) -> CheckResult:
    """Every parsed rule must have its generated heading, in document order."""
    titles = [rule.title for rule in rules]
    found = _generated_headings(scan, 3, titles)
    detail = f"{len(found)} rule headings, expected {len(rules)}"
    issues = [
        ValidationIssue(
            check="rule_headings",
            target=rules[pos].source,
            message=f"Rule heading '### {rules[pos].title}' not found",
            details={"position": pos + 1},
        )
        for pos in _unmatched(titles, found)
    ]
    return CheckResult("rule_headings", not issues, detail, issues)


def check_metadata_delimiters(scan: FenceScan) -> CheckResult:
    """No metadata delimiter may survive outside code fences."""
    issues = [
        ValidationIssue(
            check="metadata_delimiters",
            target=f"line {line.number}",
            message=f"Metadata delimiter '{METADATA_DELIMITER}' found in output",
            details={"line": line.number},
        )
        for line in scan.lines
        if not line.in_fence and line.text.strip() == METADATA_DELIMITER
    ]
    return CheckResult(
        "metadata_delimiters",
        not issues,
        f"{len(issues)} metadata delimiter lines",
        issues,
    )


def check_divider_count(
    scan: FenceScan,
    divider: str,
    rule_counts: list[int],
    policy: DividerPolicy,
) -> CheckResult:
    """Divider lines must match what the divider policy places for these counts."""
    expected = count_dividers(rule_counts, policy)
    found = [
        line.number for line in scan.lines
        if not line.in_fence and line.text.strip() == divider
    ]
    detail = f"{len(found)} dividers, expected {expected}"
    if len(found) == expected:
        return CheckResult("divider_count", True, detail)
    return CheckResult(
        "divider_count",
        False,
        detail,
        [
            ValidationIssue(
                check="divider_count",
                target="document",
                message=f"Found {len(found)} '{divider}' dividers, expected {expected}",
                details={"lines": found, "expected": expected},
            )
        ],
    )


def extract_toc(scan: FenceScan) -> list[tuple[str, str, int, int]] | None:
    """Parse TOC links as ``(label, anchor, level, line_number)``.

    Returns None when the document has no table of contents heading.
    """
    start: int | None = None
    for idx, line in enumerate(scan.lines):
        if not line.in_fence and line.text.strip() == TOC_HEADING:
            start = idx + 1
            break
    if start is None:
        return None

    entries: list[tuple[str, str, int, int]] = []
    for line in scan.lines[start:]:
        if not line.in_fence and _HEADING_RE.match(line.text):
            break
        match = _TOC_LINK_RE.match(line.text)
        if match:
            level = 2 if len(match.group("indent")) >= 2 else 1
            entries.append(
                (
                    unescape_label(match.group("label")),
                    match.group("anchor"),
                    level,
                    line.number,
                )
            )
    return entries


def check_anchor_resolution(
    scan: FenceScan, section_titles: list[str], rule_titles: list[str]
) -> CheckResult:
    """Every TOC anchor must round-trip and resolve to exactly one heading.

    Also reports any two generated section/rule headings that share a slug,
    whether or not the TOC links to them.
    """
    issues: list[ValidationIssue] = []
    section_count = len(section_titles)
    generated = (
        _generated_headings(scan, 2, section_titles)
        + _generated_headings(scan, 3, rule_titles)
    )
    slug_counts = Counter(slugify(text) for _, text, _ in generated)

    entries = extract_toc(scan)
    if entries is None:
        issues.append(
            ValidationIssue(
                check="anchor_resolution",
                target="document",
                message=f"Table of contents heading '{TOC_HEADING}' not found",
            )
        )
        entries = []
    else:
        top_level = sum(1 for _, _, level, _ in entries if level == 1)
        if top_level != section_count:
            issues.append(
                ValidationIssue(
                    check="anchor_resolution",
                    target="table of contents",
                    message=f"TOC lists {top_level} sections, expected {section_count}",
                    details={"found": top_level, "expected": section_count},
                )
            )

    reported: set[str] = set()
    for label, anchor, _, number in entries:
        expected_anchor = slugify(label)
        if expected_anchor != anchor:
            issues.append(
                ValidationIssue(
                    check="anchor_resolution",
                    target=f"#{anchor}",
                    message=f"TOC entry '{label}' links to '#{anchor}' "
                            f"but its title slugs to '#{expected_anchor}'",
                    details={"line": number, "label": label},
                )
            )

        hits = slug_counts.get(anchor, 0)
        if hits == 0:
            issues.append(
                ValidationIssue(
                    check="anchor_resolution",
                    target=f"#{anchor}",
                    message=f"TOC anchor '#{anchor}' resolves to no heading",
                    details={"line": number, "label": label},
                )
            )
        elif hits > 1 and anchor not in reported:
            reported.add(anchor)
            issues.append(
                ValidationIssue(
                    check="anchor_resolution",
                    target=f"#{anchor}",
                    message=f"TOC anchor '#{anchor}' is ambiguous: {hits} headings share it",
                    details={
                        "line": number,
                        "headings": [t for _, t, _ in generated if slugify(t) == anchor],
                    },
                )
            )

    for slug, hits in sorted(slug_counts.items()):
        if hits > 1 and slug not in reported:
            reported.add(slug)
            issues.append(
                ValidationIssue(
                    check="anchor_resolution",
                    target=f"#{slug}",
                    message=f"{hits} headings slug to the same anchor '#{slug}'",
                    details={"headings": [t for _, t, _ in generated if slugify(t) == slug]},
                )
            )

    return CheckResult(
        "anchor_resolution",
        not issues,
        f"{len(entries)} TOC entries, {len(slug_counts)} distinct heading anchors",
        issues,
    )


def check_code_fences(lines: list[str], sections: list[ResolvedSection]) -> CheckResult:
    """Each rule body must close every code fence it opens.

    Rule bodies are located by their exact generated heading line, in
    document order, and span up to the next rule heading.
    """
    expected = [rule for section in sections for rule in section.rules]

    located: list[tuple[int, RuleRecord]] = []
    cursor = 0
    issues: list[ValidationIssue] = []
    for rule in expected:
        heading = f"### {rule.title}"
        for idx in range(cursor, len(lines)):
            if lines[idx].rstrip() == heading:
                located.append((idx, rule))
                cursor = idx + 1
                break
        else:
            issues.append(
                ValidationIssue(
                    check="code_fences",
                    target=rule.source,
                    message=f"Rule '{rule.title}' has no heading line to anchor its body; "
                            f"its fences were not checked",
                )
            )

    missing = len(issues)
    for pos, (start, rule) in enumerate(located):
        end = located[pos + 1][0] if pos + 1 < len(located) else len(lines)
        span = scan_lines(lines[start + 1:end], first_number=start + 2)
        delimiters = Counter(line.fence for line in span.lines if line.fence)
        if span.unclosed is not None:
            fence = span.unclosed.fence * 3
            issues.append(
                ValidationIssue(
                    check="code_fences",
                    target=rule.source,
                    message=f"Rule '{rule.title}' opens a {fence} fence on line "
                            f"{span.unclosed.number} that is never closed",
                    details={"line": span.unclosed.number, "delimiters": dict(delimiters)},
                )
            )

    detail = f"{len(located)} rule bodies checked"
    if missing:
        detail += f", {missing} rule headings not found"
    return CheckResult("code_fences", not issues, detail, issues)


def run_validation_suite(
    text: str,
    sections: list[ResolvedSection],
    divider: str,
    divider_policy: str | None = None,
) -> ValidationReport:
    """Run every structural check over the rendered text and collect the results.

    All checks run unconditionally; a failing check never stops the others.
    """
    policy = get_policy(divider_policy)
    lines = text.splitlines()
    scan = scan_lines(lines)
    rule_counts = [len(s.rules) for s in sections]
    rules = [rule for section in sections for rule in section.rules]
    section_titles = [
        section_heading_title(index, section)
        for index, section in enumerate(sections, start=1)
    ]
    results: list[CheckResult] = []

    # 1. Section heading count
    results.append(check_section_headings(scan, section_titles))

    # 2. Rule heading count
    results.append(check_rule_headings(scan, rules))

    # 3. Metadata delimiters fully stripped
    results.append(check_metadata_delimiters(scan))

    # 4. Divider count per policy
    results.append(check_divider_count(scan, divider, rule_counts, policy))

    # 5. TOC anchors resolve, no slug collisions
    results.append(check_anchor_resolution(
        scan, section_titles, [rule.title for rule in rules]
    ))

    # 6. Balanced code fences per rule body
    results.append(check_code_fences(lines, sections))

    report = ValidationReport(
        total_sections=len(sections),
        total_rules=sum(rule_counts),
        results=results,
    )
    logger.debug(
        "Validation: %d checks run, %d failed", len(results), len(report.failed_checks)
    )
    return report


def format_report(report: ValidationReport) -> list[str]:
    """Render a report as log lines: one per check, one per issue."""
    lines: list[str] = []
    for result in report.results:
        status = "PASS" if result.passed else "FAIL"
        lines.append(f"[{status}] {result.check}: {result.detail}")
        for issue in result.issues:
            lines.append(f"    {issue.target}: {issue.message}")
    return lines


def save_report(report: ValidationReport, output_path: Path) -> None:
    """Write a report to a JSON file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "passed": report.passed,
        "total_sections": report.total_sections,
        "total_rules": report.total_rules,
        "results": [asdict(r) for r in report.results],
    }
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(json.dumps(record, indent=2, ensure_ascii=False) + "\n")
