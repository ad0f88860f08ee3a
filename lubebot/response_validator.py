from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .knowledge.knowledge_store import KnowledgeStore

logger = logging.getLogger("lubebot.validator")

DEFAULT_SKU_PATTERN = r"LM[0-9]{4,5}(?![0-9])"
DEFAULT_WARNING = "⚠️ Some product references could not be verified and were removed."
DEFAULT_FALLBACK = (
    "Sorry, I could not find a product that matches your needs. Please contact customer service."
)
ACTION_REMOVE_AND_WARN = "remove_and_warn"
ACTION_REPLACE = "replace"

_NUMBERED_ITEM_RE = re.compile(r"^\s*\d+[.)、]\s")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of screening one generated answer against the catalog."""
    has_invalid_identifiers: bool
    invalid_identifiers: List[str] = field(default_factory=list)
    sanitized_text: str = ""


class ResponseValidator:
    """Hallucination guard: strip part numbers the catalog does not know."""

    def __init__(self, store: Optional[KnowledgeStore] = None) -> None:
        self._store = store

    def _rules(self) -> dict:
        if self._store is None:
            return {}
        rules = self._store.load_section("anti-hallucination-rules", "product_validation")
        return rules if isinstance(rules, dict) else {}

    def validate(self, generated_text: str, known_identifiers: Iterable[str]) -> ValidationResult:
        """Purpose: Check every identifier-like token in an answer against the catalog.
        Inputs/Outputs: Generated text and the catalog's part numbers; returns a
            ValidationResult with the sanitized text.
        Side Effects / State: Logs invalid identifiers at WARNING.
        Dependencies: anti-hallucination-rules.product_validation (pattern, action,
            warning and fallback text).
        Failure Modes: An invalid pattern in the rules falls back to the default
            pattern. An empty catalog makes every identifier invalid.
        If Removed: Invented part numbers reach customers.
        Testing Notes: Text citing LM9999 against a catalog without it must come
            back without "LM9999" and with has_invalid_identifiers=True.
        """
        # Extract, diff against the catalog, then strip or replace.
        rules = self._rules()
        text = generated_text or ""
        pattern = _compile(rules.get("sku_pattern") or DEFAULT_SKU_PATTERN)
        found = _unique(match.group(0).upper() for match in pattern.finditer(text))
        known = {str(identifier).upper() for identifier in known_identifiers if identifier}
        invalid = [identifier for identifier in found if identifier not in known]
        if not invalid:
            return ValidationResult(has_invalid_identifiers=False, sanitized_text=text)

        logger.warning("validator invalid_identifiers=%s found=%s", ",".join(invalid), len(found))
        fallback = rules.get("fallback_message") or DEFAULT_FALLBACK
        action = rules.get("action") or ACTION_REMOVE_AND_WARN
        valid_remaining = [identifier for identifier in found if identifier in known]
        if action == ACTION_REPLACE:
            return ValidationResult(True, invalid, fallback)

        stripped = strip_identifiers(text, invalid, pattern)
        if not valid_remaining and not stripped.strip():
            return ValidationResult(True, invalid, fallback)
        warning = rules.get("warning_message") or DEFAULT_WARNING
        sanitized = f"{warning}\n\n{stripped}".strip() if stripped.strip() else fallback
        return ValidationResult(True, invalid, sanitized)


def strip_identifiers(text: str, invalid: List[str], pattern: re.Pattern) -> str:
    """Purpose: Remove every line (and numbered block) citing an invalid identifier.
    Inputs/Outputs: Text, uppercased invalid identifiers and the SKU pattern;
        returns the text without those lines, blank runs collapsed.
    Side Effects / State: None.
    Dependencies: None beyond regex.
    Failure Modes: None; unmatched text is returned unchanged.
    If Removed: validate() can only replace whole answers.
    Testing Notes: A numbered item whose second line holds the bad SKU must go
        entirely, including its title line.
    """
    # A numbered item spans its header line and the indented lines after it.
    bad = set(invalid)
    blocks: List[List[str]] = []
    for line in text.split("\n"):
        if _NUMBERED_ITEM_RE.match(line) or not blocks or not blocks[-1] or not _is_continuation(line, blocks[-1]):
            blocks.append([line])
        else:
            blocks[-1].append(line)

    kept: List[str] = []
    for block in blocks:
        if _block_has_invalid(block, bad, pattern):
            if _NUMBERED_ITEM_RE.match(block[0]):
                continue
            kept.extend(line for line in block if not _line_has_invalid(line, bad, pattern))
            continue
        kept.extend(block)
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(kept)).strip()


def _is_continuation(line: str, block: List[str]) -> bool:
    # Only numbered items own their indented follow-up lines.
    return bool(_NUMBERED_ITEM_RE.match(block[0])) and bool(line.strip()) and line[:1] in (" ", "\t", "-", "•")


def _line_has_invalid(line: str, bad: set, pattern: re.Pattern) -> bool:
    return any(match.group(0).upper() in bad for match in pattern.finditer(line))


def _block_has_invalid(block: List[str], bad: set, pattern: re.Pattern) -> bool:
    return any(_line_has_invalid(line, bad, pattern) for line in block)


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        logger.warning("validator bad_pattern=%s using_default", pattern)
        return re.compile(DEFAULT_SKU_PATTERN, re.IGNORECASE)


def _unique(values: Iterable[str]) -> List[str]:
    result: List[str] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result
