"""Shared pytest fixtures for the rulebook test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# ── Corpus Fixtures ───────────────────────────────────────────────


@pytest.fixture
def rules_dir() -> Path:
    return FIXTURES_DIR / "rules"


@pytest.fixture
def manifest_path() -> Path:
    return FIXTURES_DIR / "manifest.yaml"


@pytest.fixture
def nonexistent_manifest_path(tmp_path: Path) -> Path:
    return tmp_path / "does_not_exist.yaml"


# ── Sample Text Fixtures ─────────────────────────────────────────


@pytest.fixture
def sample_rule_text() -> str:
    """A rule file with a complete metadata block and a fenced example."""
    return """\
---
title: Use Lazy State Initialization
impact: MEDIUM
impactDescription: wasted computation on every render
tags: react, hooks, useState
---

Pass a function to `useState` for expensive initial values.

```tsx
const [index] = useState(() => buildSearchIndex(items))
```
"""


SAMPLE_MANIFEST = """\
title: Sample Rules
version: 0.1.0
abstract: Sample abstract.
sections:
  - id: async
    order: 1
    title: Eliminating Waterfalls
    impact: CRITICAL
    description: Waterfalls are the top performance killer.
  - id: rendering
    order: 2
    title: Rendering Performance
    impact: MEDIUM
    prefixes: [rendering, paint]
"""


def _rule_text(
    title: str,
    impact: str = "HIGH",
    body: str = "Some guidance.\n",
    tags: str = "perf",
) -> str:
    """Build the text of a well-formed rule file."""
    return (
        "---\n"
        f"title: {title}\n"
        f"impact: {impact}\n"
        f"tags: {tags}\n"
        "---\n"
        "\n"
        f"{body}"
    )


@pytest.fixture
def make_rule() -> Callable[..., str]:
    """Factory building the text of a well-formed rule file."""
    return _rule_text


@pytest.fixture
def sample_manifest_text() -> str:
    return SAMPLE_MANIFEST


@pytest.fixture
def write_corpus(tmp_path: Path) -> Callable[..., tuple[Path, Path]]:
    """Factory writing a corpus into tmp_path.

    Call with ``{filename: text}`` for the rules and optional manifest
    text; returns ``(rules_dir, manifest_path)``.
    """

    def _write(
        rules: dict[str, str], manifest: str = SAMPLE_MANIFEST
    ) -> tuple[Path, Path]:
        rules_path = tmp_path / "rules"
        rules_path.mkdir(exist_ok=True)
        for name, text in rules.items():
            (rules_path / name).write_text(text, encoding="utf-8")
        manifest_file = tmp_path / "manifest.yaml"
        manifest_file.write_text(manifest, encoding="utf-8")
        return rules_path, manifest_file

    return _write
