"""Rule-corpus compiler and structural validator."""

from __future__ import annotations

from pathlib import Path


def read_source(path: str | Path) -> str:
    """Read a UTF-8 source file without translating its line endings.

    Args:
        path: Path to a rule file, manifest, or compiled document.

    Returns:
        The file contents exactly as stored, ``\\r\\n`` included.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Source file not found: {path}")

    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()
