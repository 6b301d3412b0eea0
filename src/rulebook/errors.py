"""Exception types raised while compiling a rule corpus."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationReport


class RulebookError(Exception):
    """Base class for all compiler failures."""


class MetadataParseError(RulebookError):
    """A rule file carries a malformed or unterminated metadata block."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"{source}: {message}")


class ManifestParseError(RulebookError):
    """The section manifest is structurally malformed.

    ``errors`` holds every problem found, so one run reports them all.
    """

    def __init__(self, source: str, errors: list[str]) -> None:
        self.source = source
        self.errors = list(errors)
        super().__init__(f"{source}: " + "; ".join(self.errors))


class UnknownSectionError(RulebookError):
    """One or more rule files match no section prefix in the manifest."""

    def __init__(self, files: list[str]) -> None:
        self.files = list(files)
        super().__init__(
            "No manifest section matches rule file(s): " + ", ".join(self.files)
        )


class StructuralValidationError(RulebookError):
    """The assembled document failed one or more structural checks."""

    def __init__(self, report: ValidationReport) -> None:
        self.report = report
        failed = [r.check for r in report.results if not r.passed]
        super().__init__(
            f"Structural validation failed: {len(failed)} check(s) "
            f"({', '.join(failed)})"
        )
