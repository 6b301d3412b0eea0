"""Rulebook CLI — command-line interface for the rule-corpus compiler."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .dividers import POLICIES
from .errors import (
    ManifestParseError,
    RulebookError,
    StructuralValidationError,
    UnknownSectionError,
)

if TYPE_CHECKING:
    from .validation import ValidationReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION_FAILED = 1
EXIT_USAGE = 2
EXIT_PARSE_ERROR = 3
EXIT_IO_ERROR = 4


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="rulebook",
        description=(
            "Compile a directory of rule files into one validated markdown document. "
            "The compile step is the 'build' subcommand: "
            "rulebook build --rules-dir DIR --manifest FILE --output FILE"
        ),
    )

    # Global logging verbosity flags
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging output",
    )
    verbosity.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress all output except warnings and errors",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    # build subcommand
    build_subparser = subparsers.add_parser(
        "build",
        help="Compile the rules directory into one document and validate it",
    )
    _add_corpus_arguments(build_subparser)
    build_subparser.add_argument(
        "--output", required=True, help="Path of the compiled markdown document"
    )
    build_subparser.add_argument(
        "--check", action="store_true", default=False,
        help="Write nothing; fail if the existing output differs from a fresh compile",
    )

    # validate subcommand
    validate_parser = subparsers.add_parser(
        "validate",
        help="Run the structural checks against an existing compiled document",
    )
    _add_corpus_arguments(validate_parser)
    validate_parser.add_argument(
        "--document", required=True, help="Path to the compiled markdown document"
    )

    # sections subcommand
    sections_parser = subparsers.add_parser(
        "sections",
        help="Show which section each rule file resolves to",
    )
    sections_parser.add_argument(
        "--rules-dir", required=True, help="Directory holding the rule files"
    )
    sections_parser.add_argument(
        "--manifest", required=True, help="Path to the YAML section manifest"
    )

    return parser


def _add_corpus_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--rules-dir", required=True, help="Directory holding the rule files"
    )
    parser.add_argument(
        "--manifest", required=True, help="Path to the YAML section manifest"
    )
    parser.add_argument(
        "--divider-policy", choices=sorted(POLICIES), default=None,
        help="Override the manifest's divider placement policy",
    )
    parser.add_argument(
        "--report", default=None,
        help="Also write the validation report as JSON to this path",
    )


def _log_validation_report(report: ValidationReport) -> None:
    """Log a validation report; failures go out at ERROR level."""
    from .validation import format_report

    logger.info(
        "Validation: %d checks run on %d sections, %d rules",
        len(report.checks_run), report.total_sections, report.total_rules,
    )
    for line in format_report(report):
        if report.passed:
            logger.info("  %s", line)
        else:
            logger.error("  %s", line)


def _write_report(report: ValidationReport, path: str | None) -> None:
    if path is None:
        return
    from .validation import save_report

    save_report(report, Path(path))
    logger.info("Wrote validation report to %s", path)


def cmd_build(args: argparse.Namespace) -> int:
    """Compile, validate, and write the document.

    Returns exit code (0 = success).
    """
    from .compiler import compile_corpus, is_up_to_date, write_document

    # 1. Compile and validate in memory
    result = compile_corpus(args.rules_dir, args.manifest, args.divider_policy)
    _log_validation_report(result.report)
    _write_report(result.report, args.report)

    if not result.report.passed:
        raise StructuralValidationError(result.report)

    # 2. Staleness check only, nothing written
    if args.check:
        if is_up_to_date(result, args.output):
            logger.info("%s is up to date", args.output)
            return EXIT_OK
        logger.error("%s is out of date; run 'rulebook build' to regenerate it", args.output)
        return EXIT_VALIDATION_FAILED

    # 3. Atomic write
    write_document(result.text, args.output)
    logger.info(
        "Wrote %d sections, %d rules to %s",
        len(result.sections), result.document.rule_count, args.output,
    )
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate an existing compiled document against its corpus.

    Returns exit code (0 = success, 1 = structural failures).
    """
    from . import read_source
    from .compiler import load_corpus
    from .validation import run_validation_suite

    manifest, sections = load_corpus(args.rules_dir, args.manifest)
    text = read_source(args.document)
    logger.info("Loaded %s (%d characters)", args.document, len(text))

    policy = args.divider_policy or manifest.divider_policy
    report = run_validation_suite(text, sections, manifest.divider, policy)
    _log_validation_report(report)
    _write_report(report, args.report)

    if not report.passed:
        raise StructuralValidationError(report)
    return EXIT_OK


def cmd_sections(args: argparse.Namespace) -> int:
    """Log the resolved section index.

    Returns exit code (0 = success).
    """
    from .compiler import load_corpus

    _, sections = load_corpus(args.rules_dir, args.manifest)
    for index, section in enumerate(sections, start=1):
        descriptor = section.descriptor
        logger.info(
            "%d. %s [%s] (id=%s, order=%d, prefixes=%s): %d rules",
            index, descriptor.title, descriptor.impact_level, descriptor.id,
            descriptor.order, ", ".join(descriptor.rule_file_prefixes),
            len(section.rules),
        )
        for rule in section.rules:
            tags = ", ".join(sorted(rule.tags)) or "-"
            logger.info(
                "    %s: %s [%s] tags: %s",
                rule.source, rule.title,
                rule.impact_level or descriptor.impact_level, tags,
            )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # Return the exit code from argparse (0 for --help, 2 for errors)
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    # Configure root logger based on verbosity flags
    if getattr(args, "verbose", False):
        log_level = logging.DEBUG
    elif getattr(args, "quiet", False):
        log_level = logging.WARNING
    else:
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(levelname)s: %(message)s",
    )

    command_handlers = {
        "build": cmd_build,
        "validate": cmd_validate,
        "sections": cmd_sections,
    }

    handler = command_handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        return handler(args)
    except StructuralValidationError as e:
        logger.error("%s", e)
        return EXIT_VALIDATION_FAILED
    except ManifestParseError as e:
        for err in e.errors:
            logger.error("Manifest error (%s): %s", e.source, err)
        return EXIT_PARSE_ERROR
    except UnknownSectionError as e:
        for name in e.files:
            logger.error("Unknown section for rule file: %s", name)
        return EXIT_PARSE_ERROR
    except RulebookError as e:
        logger.error("%s", e)
        return EXIT_PARSE_ERROR
    except OSError as e:
        logger.error("%s", e)
        return EXIT_IO_ERROR
