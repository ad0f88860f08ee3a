"""Scooter vs geared-motorcycle rules and the synthetic-grade scorer.

Keyword vocabularies come from the "ai-analysis-rules" knowledge bundle so
new models can be added without code changes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .catalog import CatalogEntry
from .certification import has_certification
from .intent import Intent
from .utils import contains_any

SCOOTER = "scooter"
MANUAL = "manual"

SCOOTER_CERT = "JASO MB"
MANUAL_CERT = "JASO MA2"
MANUAL_CERTS = ("JASO MA2", "JASO MA")

DEFAULT_SYNTHETIC_GRADES = [
    (3.0, ["synthoil", "race", "fully synthetic", "fully-synthetic", "全合成"]),
    (2.0, ["top tec", "special tec", "leichtlauf", "synthetic technology", "合成", "street", "formula"]),
    (1.0, ["mineral", "礦物"]),
]
DEFAULT_SYNTHETIC_SCORE = 1.5


def _section(rules: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    value = (rules or {}).get(name)
    return value if isinstance(value, dict) else {}


def _vehicle_text(intent: Intent) -> str:
    parts = [intent.vehicle_brand or "", intent.vehicle_model or ""]
    return " ".join(part for part in parts if part)


def is_scooter(intent: Intent, rules: Optional[Dict[str, Any]] = None) -> bool:
    """Purpose: Decide whether the requested vehicle is a CVT/dry-clutch scooter.
    Inputs/Outputs: Intent plus the ai-analysis-rules bundle; returns bool.
    Side Effects / State: None.
    Dependencies: scooter_identification.models and sub_type_tags from knowledge.
    Failure Modes: Missing rules only disable the keyword layer.
    If Removed: Scooter riders get wet-clutch oils ranked first.
    Testing Notes: Check each layer (sub-type tag, JASO MB cert, model list) alone.
    """
    # Layer 1: explicit sub-type tag.
    if not intent.is_motorcycle:
        return False
    if intent.vehicle_sub_type == SCOOTER:
        return True
    if intent.vehicle_sub_type == MANUAL:
        return False
    # Layer 2: explicit certification tag.
    certs = " ".join(intent.certifications)
    if has_certification(certs, SCOOTER_CERT):
        return True
    if any(has_certification(certs, cert) for cert in MANUAL_CERTS):
        return False
    # Layer 3: model keyword list.
    section = _section(rules, "scooter_identification")
    models = list(section.get("models") or [])
    return bool(models) and contains_any(_vehicle_text(intent), models) is not None


def is_manual_motorcycle(intent: Intent, rules: Optional[Dict[str, Any]] = None) -> bool:
    """Purpose: Decide whether the requested vehicle is a geared, wet-clutch motorcycle.
    Inputs/Outputs: Intent plus the ai-analysis-rules bundle; returns bool.
    Side Effects / State: None.
    Dependencies: motorcycle_identification.brands/series from knowledge; is_scooter.
    Failure Modes: Unknown models resolve to False (no sub-type weight either way).
    If Removed: Geared motorcycles lose the JASO MA2 preference in ranking.
    Testing Notes: A scooter model from a manual-brand list must still be False.
    """
    # Layer 1: explicit sub-type tag.
    if not intent.is_motorcycle:
        return False
    if intent.vehicle_sub_type == MANUAL:
        return True
    if intent.vehicle_sub_type == SCOOTER:
        return False
    # Layer 2: explicit certification tag.
    certs = " ".join(intent.certifications)
    if any(has_certification(certs, cert) for cert in MANUAL_CERTS):
        return True
    if has_certification(certs, SCOOTER_CERT):
        return False
    # Layer 3: brand/series lists, but never for a known scooter model.
    if is_scooter(intent, rules):
        return False
    section = _section(rules, "motorcycle_identification")
    keywords = list(section.get("brands") or []) + list(section.get("series") or [])
    return bool(keywords) and contains_any(_vehicle_text(intent), keywords) is not None


def requested_sub_type(intent: Intent, rules: Optional[Dict[str, Any]] = None) -> Optional[str]:
    if is_scooter(intent, rules):
        return SCOOTER
    if is_manual_motorcycle(intent, rules):
        return MANUAL
    return None


def jaso_type(intent: Intent, rules: Optional[Dict[str, Any]] = None) -> str:
    """Certification a motorcycle oil must carry for the requested vehicle."""
    return SCOOTER_CERT if is_scooter(intent, rules) else MANUAL_CERT


def entry_sub_types(entry: CatalogEntry, rules: Optional[Dict[str, Any]] = None) -> set:
    """Purpose: Tag an entry as scooter-grade, manual-grade, or both.
    Inputs/Outputs: CatalogEntry plus the ai-analysis-rules bundle; returns a set
        holding SCOOTER and/or MANUAL.
    Side Effects / State: None.
    Dependencies: has_certification; jaso_rules.*.title_keywords from knowledge.
    Failure Modes: Entries with no JASO code and no title keyword get no tags.
    If Removed: Ranking cannot reward or penalise clutch compatibility.
    Testing Notes: A "JASO MB" entry titled "... Race" must stay scooter-only.
    """
    # Certification text decides whenever it names a JASO grade.
    tags = set()
    cert_text = entry.certification_text
    if has_certification(cert_text, SCOOTER_CERT):
        tags.add(SCOOTER)
    if any(has_certification(cert_text, cert) for cert in MANUAL_CERTS):
        tags.add(MANUAL)
    if tags:
        return tags
    # No JASO code: fall back to title keywords.
    jaso = _section(rules, "jaso_rules")
    scooter_words = list(_section(jaso, SCOOTER).get("title_keywords") or [])
    manual_words = list(_section(jaso, MANUAL).get("title_keywords") or [])
    if scooter_words and contains_any(entry.title, scooter_words):
        tags.add(SCOOTER)
    if manual_words and contains_any(entry.title, manual_words):
        tags.add(MANUAL)
    return tags


def synthetic_grade(title: str, rules: Optional[Dict[str, Any]] = None) -> float:
    """Purpose: Grade a product title as full-synthetic (3), synthetic-technology (2),
        mineral (1) or unknown (1.5).
    Inputs/Outputs: Title text and optional rules bundle; returns the grade.
    Side Effects / State: None.
    Dependencies: synthetic_grades table from ai-analysis-rules, else built-in table.
    Failure Modes: Malformed table rows are skipped.
    If Removed: Synthetic-preference ordering has no tie-breaker.
    Testing Notes: "Synthoil Race" -> 3, "Top Tec 4200" -> 2, "Mineral" -> 1.
    """
    # Ordered checks: the first matching grade wins.
    grades = _grade_table(rules)
    for score, keywords in grades:
        if contains_any(title, keywords):
            return score
    raw_default = (rules or {}).get("synthetic_default")
    return float(raw_default) if isinstance(raw_default, (int, float)) else DEFAULT_SYNTHETIC_SCORE


def _grade_table(rules: Optional[Dict[str, Any]]) -> List[tuple]:
    table = (rules or {}).get("synthetic_grades")
    if not isinstance(table, list):
        return DEFAULT_SYNTHETIC_GRADES
    grades = []
    for row in table:
        if not isinstance(row, dict):
            continue
        keywords = row.get("keywords")
        score = row.get("score")
        if isinstance(keywords, list) and isinstance(score, (int, float)):
            grades.append((float(score), [str(word) for word in keywords]))
    return grades or DEFAULT_SYNTHETIC_GRADES
