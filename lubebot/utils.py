import json
import re
import unicodedata
from typing import Any, Dict, List, Optional

VISCOSITY_RE = re.compile(r"(?<!\d)(\d{1,2})\s*W\s*-?\s*(\d{2})(?!\d)", re.IGNORECASE)


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable keyword matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase string with
        full-width forms folded, Latin diacritics removed, and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by intent rules, search, and keys.
    Failure Modes: Returns an empty string when input is falsy. CJK characters are
        kept as-is so Chinese keyword tables still match.
    If Removed: Keyword tables miss on case, width, or accent variants and intents
        fall through to the default type.
    Testing Notes: Check "ＪＡＳＯ  MA2" -> "jaso ma2" and "機油 推薦" is preserved.
    """
    # Fold width, lowercase, and drop combining marks before collapsing spaces.
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", text).lower()
    decomposed = unicodedata.normalize("NFD", folded)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    recomposed = unicodedata.normalize("NFC", stripped)
    cleaned = re.sub(r"[^\w\s\-/.+]+", " ", recomposed)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_key(text: str) -> str:
    """Purpose: Produce a compact normalization key without spaces.
    Inputs/Outputs: Input is a raw string; output is normalized string with spaces removed.
    Side Effects / State: None; pure function.
    Dependencies: Calls normalize_text; used for field-synonym lookups and aliases.
    Failure Modes: Returns empty string for falsy input; otherwise deterministic.
    If Removed: Provider field synonyms and alias tables stop resolving.
    Testing Notes: Ensure "Part No" and "part_no" differ only by underscore handling.
    """
    # Collapse normalization output into a compact key.
    return normalize_text(text).replace(" ", "")


def keyword_in(haystack: str, needle: str) -> bool:
    """Match an already-normalized keyword inside already-normalized text.

    ASCII keywords must sit on word edges ("sym" must not hit "symptom");
    CJK keywords are plain substrings because Chinese has no spaces.
    """
    if not needle or not haystack:
        return False
    if needle.isascii():
        pattern = r"(?<![a-z0-9])" + re.escape(needle) + r"(?![a-z0-9])"
        return re.search(pattern, haystack) is not None
    return needle in haystack


def contains_any(text: str, keywords: List[str]) -> Optional[str]:
    """Return the first keyword found in the normalized text, or None."""
    # Compare normalized forms so table entries need no casing discipline.
    haystack = normalize_text(text)
    if not haystack:
        return None
    for keyword in keywords:
        if keyword_in(haystack, normalize_text(str(keyword))):
            return str(keyword)
    return None


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "..."


def viscosity_grades(text: str) -> List[str]:
    """SAE grades written in text, normalized to the "10W-40" form."""
    if not text:
        return []
    grades: List[str] = []
    for match in VISCOSITY_RE.finditer(unicodedata.normalize("NFKC", text)):
        grade = f"{match.group(1)}W-{match.group(2)}"
        if grade not in grades:
            grades.append(grade)
    return grades


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Classifier outputs wrapped in code fences cannot be parsed.
    Testing Notes: Provide strings with ```json fences around the object.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a JSON object from a model output string safely.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_json_block and json.loads; called by the classifier.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Classifier parsing crashes on malformed model output.
    Testing Notes: Validate valid JSON parses and malformed JSON returns None.
    """
    # Parse only the extracted JSON block to avoid non-JSON prefixes/suffixes.
    block = extract_json_block(text)
    if not block:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
