"""Certification normalization and matching for catalog certification text."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

# "JASO MA" must not match inside "JASO MA2".
_AMBIGUOUS_PREFIXES = {"JASOMA": "2"}

_SPLIT_RE = re.compile(r"[,;/|\n]+")
_LONGLIFE_RE = re.compile(r"\bLL-?(\d{2})\b")

CERT_DETECT_RE = re.compile(
    r"(JASO\s*M[AB]2?"
    r"|API\s*S[NP](?:\s*PLUS)?"
    r"|ILSAC\s*GF-?\d[AB]?"
    r"|ACEA\s*[ACE]\d"
    r"|VW\s*50\d\.\d{2}"
    r"|MB\s*229\.\d{1,2}"
    r"|(?:BMW\s*)?(?:LL|LONGLIFE)-?\d{2}"
    r"|WSS-M2C\d{3}-[A-Z]"
    r"|DEXOS\s*\d?)",
    re.IGNORECASE,
)


def normalize_certification(text: str) -> str:
    """Purpose: Reduce a certification string to a comparable key.
    Inputs/Outputs: Input like "BMW LL-04 Approval"; output like "BMWLONGLIFE04".
    Side Effects / State: None; pure function.
    Dependencies: Used by certification_tokens and the search equality filter.
    Failure Modes: Returns "" for falsy input.
    If Removed: "JASO MA 2" and "JASO MA2" stop matching each other.
    Testing Notes: Check spacing, dashes, "APPROVAL", and LL-xx rewriting.
    """
    # Rewrite LongLife shorthands before dashes disappear.
    if not text:
        return ""
    upper = text.upper()
    upper = _LONGLIFE_RE.sub(r"LONGLIFE\1", upper)
    upper = upper.replace("APPROVAL", "")
    upper = upper.replace("LONGLIFE-", "LONGLIFE")
    return re.sub(r"[\s\-]+", "", upper)


def certification_tokens(text: str) -> List[str]:
    """Split catalog certification text into normalized tokens."""
    if not text:
        return []
    tokens = [normalize_certification(part) for part in _SPLIT_RE.split(text)]
    return [token for token in tokens if token]


def exact_match(requested: str, certification_text: str) -> bool:
    key = normalize_certification(requested)
    if not key:
        return False
    return key in certification_tokens(certification_text)


def substring_match(requested: str, certification_text: str) -> bool:
    """Purpose: Loose certification match inside free-form certification text.
    Inputs/Outputs: Inputs are a requested code and the entry text; returns bool.
    Side Effects / State: None.
    Dependencies: normalize_certification; the ambiguous-prefix table.
    Failure Modes: Empty inputs return False.
    If Removed: Entries listing "API SP/SN" lose the partial certification weight.
    Testing Notes: "JASO MA" vs "JASO MA2" must be False; vs "JASO MA, MB" True.
    """
    # Superset codes ("MA2") must not satisfy their shorter prefix ("MA").
    key = normalize_certification(requested)
    haystack = normalize_certification(certification_text)
    if not key or not haystack:
        return False
    blocked = _AMBIGUOUS_PREFIXES.get(key)
    if blocked:
        pattern = re.escape(key) + "(?!" + re.escape(blocked) + ")"
        return re.search(pattern, haystack) is not None
    return key in haystack


def detect_certifications(message: str) -> List[str]:
    """Return certification codes written in a user message, normalized for display."""
    if not message:
        return []
    found: List[str] = []
    for match in CERT_DETECT_RE.finditer(message):
        code = re.sub(r"\s+", " ", match.group(0).upper()).strip()
        if code not in found:
            found.append(code)
    return found


def has_certification(certification_text: str, requested: str) -> bool:
    """Exact token match, falling back to the guarded substring match."""
    return exact_match(requested, certification_text) or substring_match(
        requested, certification_text
    )


def compatible_upgrades(requested: str, table: Optional[Dict[str, Any]]) -> List[str]:
    """Purpose: List newer codes that are backward compatible with a requested one.
    Inputs/Outputs: Requested code like "API SN" plus the compatibility table
        {standard: {newer_code: [older codes it covers]}}; returns newer codes in
        table order.
    Side Effects / State: None.
    Dependencies: normalize_certification; search-reference.certification_compatibility.
    Failure Modes: Missing or malformed tables return []; OEM approvals are never
        listed there, so they never upgrade.
    If Removed: A request for API SN no longer credits API SP oils.
    Testing Notes: "API SN" -> ["API SQ", "API SP"]; "VW 504.00" -> [].
    """
    # Keys starting with "_" hold notes, not standards.
    key = normalize_certification(requested)
    if not key or not isinstance(table, dict):
        return []
    upgrades: List[str] = []
    for standard, rows in table.items():
        if str(standard).startswith("_") or not isinstance(rows, dict):
            continue
        for newer, covered in rows.items():
            if not isinstance(covered, list):
                continue
            if any(normalize_certification(str(code)) == key for code in covered) and newer not in upgrades:
                upgrades.append(newer)
    return upgrades
