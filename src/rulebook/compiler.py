"""Compilation pipeline — parse, resolve, assemble, validate, write."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from . import read_source
from .assembly import CompiledDocument, assemble_document, render_document
from .errors import StructuralValidationError
from .manifest import Manifest, ResolvedSection, load_manifest, resolve_sections
from .metadata import load_rules
from .validation import ValidationReport, run_validation_suite

logger = logging.getLogger(__name__)


@dataclass
class CompileResult:
    """Everything produced by one compilation pass."""
    manifest: Manifest
    sections: list[ResolvedSection]
    document: CompiledDocument
    text: str
    report: ValidationReport


def load_corpus(
    rules_dir: str | Path, manifest_path: str | Path
) -> tuple[Manifest, list[ResolvedSection]]:
    """Load the manifest and rule files and resolve rules into sections.

    Raises:
        FileNotFoundError: If the manifest or rules directory is missing.
        ManifestParseError: If the manifest is malformed.
        MetadataParseError: If any rule file has a malformed metadata block.
        UnknownSectionError: If any rule matches no section.
    """
    manifest = load_manifest(manifest_path)
    logger.info("Manifest loaded: %d sections", len(manifest.sections))

    rules = load_rules(rules_dir)
    logger.info("Parsed %d rule files from %s", len(rules), rules_dir)

    sections = resolve_sections(manifest, rules)
    return manifest, sections


def compile_corpus(
    rules_dir: str | Path,
    manifest_path: str | Path,
    divider_policy: str | None = None,
) -> CompileResult:
    """Compile a corpus in memory and validate the rendered text.

    Never writes anything. The result carries the validation report whether
    or not it passed.
    """
    manifest, sections = load_corpus(rules_dir, manifest_path)

    document = assemble_document(manifest, sections, divider_policy)
    text = render_document(document)
    logger.info(
        "Assembled %d sections, %d rules (%d characters)",
        len(document.sections), document.rule_count, len(text),
    )

    report = run_validation_suite(
        text, sections, document.divider, document.divider_policy
    )
    return CompileResult(
        manifest=manifest,
        sections=sections,
        document=document,
        text=text,
        report=report,
    )


def write_document(text: str, output_path: str | Path) -> None:
    """Write text atomically: temp file in the target directory, then replace.

    The temporary file is removed if anything fails, so the target is either
    the previous version or the complete new one.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=output_path.parent, prefix=f".{output_path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, output_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.debug("Wrote %d characters to %s", len(text), output_path)


def build(
    rules_dir: str | Path,
    manifest_path: str | Path,
    output_path: str | Path,
    divider_policy: str | None = None,
) -> CompileResult:
    """Compile, validate, and atomically write the document.

    Raises:
        StructuralValidationError: If any structural check fails. Nothing is
            written in that case.
    """
    result = compile_corpus(rules_dir, manifest_path, divider_policy)
    if not result.report.passed:
        raise StructuralValidationError(result.report)

    write_document(result.text, output_path)
    logger.info("Wrote %s", output_path)
    return result


def is_up_to_date(result: CompileResult, output_path: str | Path) -> bool:
    """True when ``output_path`` already holds exactly ``result.text``."""
    output_path = Path(output_path)
    if not output_path.is_file():
        return False
    return read_source(output_path) == result.text
