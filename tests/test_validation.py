"""Tests for the structural validation suite."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from rulebook.assembly import assemble_document, render_document
from rulebook.dividers import between_rules
from rulebook.manifest import (
    ResolvedSection,
    SectionDescriptor,
    load_manifest,
    parse_manifest,
    resolve_sections,
)
from rulebook.metadata import RuleRecord, load_rules
from rulebook.validation import (
    CheckResult,
    ValidationReport,
    check_anchor_resolution,
    check_code_fences,
    check_divider_count,
    check_metadata_delimiters,
    check_rule_headings,
    check_section_headings,
    extract_toc,
    format_report,
    run_validation_suite,
    save_report,
    scan_lines,
)

ALL_CHECKS = [
    "section_headings",
    "rule_headings",
    "metadata_delimiters",
    "divider_count",
    "anchor_resolution",
    "code_fences",
]


def _rule(title: str, body: str = "Body.\n", source: str | None = None) -> RuleRecord:
    return RuleRecord(
        title=title,
        impact_level="HIGH",
        impact_description="",
        tags=frozenset(),
        body=body,
        source=source or f"async-{title.lower().replace(' ', '-')}.md",
    )


def _sections(*groups: list[RuleRecord]) -> list[ResolvedSection]:
    return [
        ResolvedSection(
            descriptor=SectionDescriptor(
                id=f"s{idx}",
                order=idx,
                title=f"Section {idx}",
                impact_level="HIGH",
                description="",
                rule_file_prefixes=(f"s{idx}",),
            ),
            rules=tuple(rules),
        )
        for idx, rules in enumerate(groups, start=1)
    ]


def _render(sections: list[ResolvedSection], manifest_text: str | None = None) -> str:
    manifest = parse_manifest(
        manifest_text or "title: T\nabstract: A.\nsections:\n  - {id: x, order: 1, impact: HIGH}\n"
    )
    return render_document(assemble_document(manifest, sections))


def _result(report: ValidationReport, check: str) -> CheckResult:
    return next(r for r in report.results if r.check == check)


@pytest.fixture
def fixture_sections(manifest_path: Path, rules_dir: Path) -> list[ResolvedSection]:
    return resolve_sections(load_manifest(manifest_path), load_rules(rules_dir))


@pytest.fixture
def fixture_text(manifest_path: Path, fixture_sections) -> str:
    return render_document(assemble_document(load_manifest(manifest_path), fixture_sections))


# ── Fence Scanning Tests ──────────────────────────────────────────


class TestScanLines:
    """Test code-fence state tracking."""

    def test_marks_fenced_lines(self):
        scan = scan_lines(["text", "```js", "# not a heading", "```", "after"])
        assert [line.in_fence for line in scan.lines] == [False, True, True, True, False]
        assert scan.unclosed is None

    def test_tilde_fence_not_closed_by_backticks(self):
        scan = scan_lines(["~~~", "```", "~~~"])
        assert [line.fence for line in scan.lines] == ["~", None, "~"]
        assert scan.unclosed is None

    def test_closing_fence_must_be_long_enough(self):
        scan = scan_lines(["````", "```", "````"])
        assert scan.lines[1].fence is None
        assert scan.unclosed is None

    def test_closing_fence_takes_no_info_string(self):
        scan = scan_lines(["```", "```python"])
        assert scan.unclosed is not None
        assert scan.unclosed.number == 1

    def test_inline_backticks_are_not_a_fence(self):
        scan = scan_lines(["```inline``` code"])
        assert scan.lines[0].in_fence is False

    def test_line_numbers_offset(self):
        scan = scan_lines(["a", "```"], first_number=10)
        assert scan.unclosed.number == 11


# ── Full Suite Tests ──────────────────────────────────────────────


class TestRunValidationSuite:
    """Test the collect-all validation run."""

    def test_fixture_document_passes(self, fixture_text, fixture_sections):
        report = run_validation_suite(fixture_text, fixture_sections, "***")
        assert report.passed, format_report(report)
        assert report.issues == []

    def test_runs_every_check(self, fixture_text, fixture_sections):
        report = run_validation_suite(fixture_text, fixture_sections, "***")
        assert report.checks_run == ALL_CHECKS

    def test_counts(self, fixture_text, fixture_sections):
        report = run_validation_suite(fixture_text, fixture_sections, "***")
        assert report.total_sections == 4
        assert report.total_rules == 5

    def test_collects_all_failures(self, fixture_text, fixture_sections):
        broken = fixture_text.replace("## 2. Bundle Size Optimization", "## Bundle Size") + "\n---\n"
        report = run_validation_suite(broken, fixture_sections, "***")
        assert not report.passed
        assert set(report.failed_checks) >= {
            "section_headings", "metadata_delimiters", "anchor_resolution",
        }
        assert report.checks_run == ALL_CHECKS

    def test_wrong_policy_fails_divider_count(self, fixture_text, fixture_sections):
        report = run_validation_suite(
            fixture_text, fixture_sections, "***", "between-sections"
        )
        assert report.failed_checks == ["divider_count"]

    def test_between_sections_document_passes(self, manifest_path: Path, fixture_sections):
        text = render_document(
            assemble_document(load_manifest(manifest_path), fixture_sections, "between-sections")
        )
        report = run_validation_suite(text, fixture_sections, "***", "between-sections")
        assert report.passed, format_report(report)

    def test_empty_corpus(self):
        sections = _sections([])
        text = _render(sections)
        report = run_validation_suite(text, sections, "***")
        assert report.passed, format_report(report)
        assert "0 dividers, expected 0" in _result(report, "divider_count").detail


# ── Individual Check Tests ────────────────────────────────────────


class TestSectionAndRuleHeadings:
    """Test heading count checks."""

    def test_missing_section_heading_named(self):
        scan = scan_lines(["## 1. One", "## Abstract"])
        result = check_section_headings(scan, ["1. One", "2. Two"])
        assert not result.passed
        assert [i.target for i in result.issues] == ["section '2. Two'"]

    def test_later_headings_found_after_missing_one(self):
        scan = scan_lines(["## 1. One", "## 3. Three"])
        result = check_section_headings(scan, ["1. One", "2. Two", "3. Three"])
        assert result.detail == "2 section headings, expected 3"
        assert len(result.issues) == 1

    def test_headings_in_code_fences_ignored(self):
        scan = scan_lines(["### Real", "```md", "### Fake", "## 2. Fake", "```"])
        assert not check_rule_headings(scan, [_rule("Real"), _rule("Fake")]).passed
        assert not check_section_headings(scan, ["2. Fake"]).passed
        assert check_rule_headings(scan, [_rule("Real")]).passed

    def test_missing_rule_heading_names_source(self):
        scan = scan_lines(["### Present"])
        result = check_rule_headings(
            scan, [_rule("Present"), _rule("Absent", source="s1-absent.md")]
        )
        assert not result.passed
        assert result.issues[0].target == "s1-absent.md"

    def test_body_subheadings_pass(self):
        sections = _sections(
            [
                _rule("A", body="Body.\n\n### Example\n\nMore.\n", source="s1-a.md"),
                _rule("B", body="## 2. Looks Numbered\n\n### Example\n", source="s1-b.md"),
            ]
        )
        report = run_validation_suite(_render(sections), sections, "***")
        assert report.passed, format_report(report)


class TestMetadataDelimiters:
    """Test leftover metadata detection."""

    def test_clean_output_passes(self):
        assert check_metadata_delimiters(scan_lines(["# T", "***"])).passed

    def test_leftover_block_reported_by_line(self):
        result = check_metadata_delimiters(scan_lines(["### A", "---", "title: A", "---"]))
        assert not result.passed
        assert [i.target for i in result.issues] == ["line 2", "line 4"]

    def test_delimiter_inside_code_fence_ignored(self):
        scan = scan_lines(["```yaml", "---", "key: value", "```"])
        assert check_metadata_delimiters(scan).passed


class TestDividerCount:
    """Test divider count against the policy."""

    def test_matches_policy(self):
        scan = scan_lines(["***", "### A", "***", "### B"])
        assert check_divider_count(scan, "***", [2], between_rules).passed

    def test_extra_divider_in_body(self):
        sections = _sections([_rule("A", body="Before.\n\n***\n\nAfter.\n")])
        report = run_validation_suite(_render(sections), sections, "***")
        assert report.failed_checks == ["divider_count"]
        assert "2 dividers, expected 1" in _result(report, "divider_count").detail

    def test_divider_in_code_fence_not_counted(self):
        scan = scan_lines(["***", "```", "***", "```"])
        assert check_divider_count(scan, "***", [1], between_rules).passed


class TestAnchorResolution:
    """Test TOC round-trip and slug collision detection."""

    def test_extract_toc(self, fixture_text):
        entries = extract_toc(scan_lines(fixture_text.splitlines()))
        assert entries[0][:3] == ("1. Eliminating Waterfalls", "1-eliminating-waterfalls", 1)
        assert entries[1][:3] == ("Defer Await Until Needed", "defer-await-until-needed", 2)
        assert len(entries) == 9

    def test_bracketed_titles_round_trip(self):
        sections = [
            ResolvedSection(
                descriptor=SectionDescriptor(
                    id="s1",
                    order=1,
                    title="Arrays [] and Maps",
                    impact_level="HIGH",
                    description="",
                    rule_file_prefixes=("s1",),
                ),
                rules=(
                    _rule("Use Set", source="s1-set.md"),
                    _rule("Avoid [] default", source="s1-default.md"),
                    _rule(r"Escape \ backslash", source="s1-escape.md"),
                ),
            )
        ]
        text = _render(sections)
        assert r"- [1. Arrays \[\] and Maps](#1-arrays-and-maps)" in text

        entries = extract_toc(scan_lines(text.splitlines()))
        assert [label for label, _, _, _ in entries] == [
            "1. Arrays [] and Maps",
            "Use Set",
            "Avoid [] default",
            r"Escape \ backslash",
        ]
        report = run_validation_suite(text, sections, "***")
        assert report.passed, format_report(report)

    def test_bracketed_rule_anchor_still_checked(self):
        lines = [
            "## Table of Contents",
            "",
            "- [1. One](#1-one)",
            r"  - [Avoid \[\] default](#avoid-default-value)",
            "",
            "## 1. One",
            "### Avoid [] default",
        ]
        result = check_anchor_resolution(scan_lines(lines), ["1. One"], ["Avoid [] default"])
        assert not result.passed
        assert [i.target for i in result.issues] == ["#avoid-default-value", "#avoid-default-value"]

    def test_colliding_rule_titles_fail(self):
        sections = _sections(
            [_rule("Use Set/Map", source="s1-a.md"), _rule("Use Set Map", source="s1-b.md")]
        )
        report = run_validation_suite(_render(sections), sections, "***")
        assert report.failed_checks == ["anchor_resolution"]
        messages = [i.message for i in _result(report, "anchor_resolution").issues]
        assert any("ambiguous" in m for m in messages)

    def test_collision_reported_without_rule_toc(self):
        manifest_text = (
            "title: T\ntoc_rules: false\nsections:\n  - {id: x, order: 1, impact: HIGH}\n"
        )
        sections = _sections([_rule("Same"), _rule("same!", source="s1-b.md")])
        report = run_validation_suite(_render(sections, manifest_text), sections, "***")
        result = _result(report, "anchor_resolution")
        assert not result.passed
        assert result.issues[0].target == "#same"
        assert result.issues[0].details["headings"] == ["Same", "same!"]

    def test_unresolved_anchor(self):
        lines = [
            "## Table of Contents",
            "",
            "- [1. One](#1-one)",
            "- [2. Two](#2-two)",
            "",
            "## 1. One",
        ]
        result = check_anchor_resolution(scan_lines(lines), ["1. One", "2. Two"], [])
        assert not result.passed
        targets = [i.target for i in result.issues]
        assert "#2-two" in targets

    def test_label_anchor_mismatch(self):
        lines = ["## Table of Contents", "", "- [1. One](#1-uno)", "", "## 1. Uno"]
        result = check_anchor_resolution(scan_lines(lines), ["1. Uno"], [])
        assert not result.passed
        assert "slugs to '#1-one'" in result.issues[0].message

    def test_missing_toc(self):
        result = check_anchor_resolution(scan_lines(["## 1. One"]), ["1. One"], [])
        assert not result.passed
        assert "not found" in result.issues[0].message

    def test_toc_section_count_mismatch(self):
        lines = ["## Table of Contents", "", "- [1. One](#1-one)", "", "## 1. One", "## 2. Two"]
        result = check_anchor_resolution(scan_lines(lines), ["1. One", "2. Two"], [])
        assert any("TOC lists 1 sections, expected 2" in i.message for i in result.issues)


class TestCodeFences:
    """Test per-rule fence balance."""

    def test_balanced_bodies_pass(self, fixture_text, fixture_sections):
        result = check_code_fences(fixture_text.splitlines(), fixture_sections)
        assert result.passed
        assert result.detail == "5 rule bodies checked"

    def test_truncated_body_names_rule_file(self):
        truncated = _rule("Cut Off", body="```ts\nconst x = 1\n", source="s1-cut-off.md")
        sections = _sections([truncated, _rule("Next", source="s1-next.md")])
        result = check_code_fences(_render(sections).splitlines(), sections)
        assert not result.passed
        assert result.issues[0].target == "s1-cut-off.md"
        assert "never closed" in result.issues[0].message

    def test_unterminated_fence_swallows_later_headings(self):
        sections = _sections([_rule("Cut Off", body="~~~\ncode\n"), _rule("Next")])
        report = run_validation_suite(_render(sections), sections, "***")
        assert {"rule_headings", "code_fences"} <= set(report.failed_checks)

    def test_missing_heading_fails_naming_rule(self):
        sections = _sections([_rule("Present"), _rule("Absent")])
        lines = ["### Present", "Body."]
        result = check_code_fences(lines, sections)
        assert not result.passed
        assert "1 rule headings not found" in result.detail
        assert [i.target for i in result.issues] == ["async-absent.md"]


# ── Report Output Tests ───────────────────────────────────────────


class TestReportOutput:
    """Test report formatting and JSON output."""

    def test_format_report_lists_checks_and_issues(self):
        sections = _sections([_rule("A", body="```\nopen\n")])
        report = run_validation_suite(_render(sections), sections, "***")
        lines = format_report(report)
        assert lines[0].startswith("[PASS] section_headings")
        assert any(line.startswith("[FAIL] code_fences") for line in lines)
        assert any("async-a.md" in line for line in lines)

    def test_save_report(self, tmp_path: Path, fixture_text, fixture_sections):
        report = run_validation_suite(fixture_text, fixture_sections, "***")
        path = tmp_path / "out" / "report.json"
        save_report(report, path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["passed"] is True
        assert data["total_rules"] == 5
        assert [r["check"] for r in data["results"]] == ALL_CHECKS
