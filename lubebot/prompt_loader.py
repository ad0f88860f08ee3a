from __future__ import annotations

from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=16)
def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt template as UTF-8 text, BOM stripped, cached per path.
    Inputs/Outputs: Input is a Path to the template; output is the decoded string.
    Side Effects / State: Reads the filesystem once per path (lru_cache).
    Dependencies: Used by IntentClassifier for intent_analysis.txt.
    Failure Modes: Missing files raise OSError; the classifier treats that as an
        unavailable AI stage and the resolver falls back to rules.
    If Removed: The AI classification stage has no instructions to send.
    Testing Notes: Point at a tmp file with a BOM and check it is stripped.
    """
    # Templates are shipped as package data and never edited at runtime.
    raw = prompt_path.read_bytes()
    return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(template: str, **values: str) -> str:
    """Fill `{name}` placeholders; literal braces in templates are doubled."""
    return template.format(**values)
