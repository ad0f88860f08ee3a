"""Multi-phase product retrieval and score-based ranking over the catalog snapshot.

Phases (each later phase only runs when the earlier ones found too little):
    Phase 1 - directed SearchTasks from the classifier (field + value + method).
    Phase 2 - keyword search over title/description/series/viscosity/category.
    Phase 3 - category fallback: every entry under the canonical category label.
Title expansion then pulls in same-title package-size variants, and ranking
sums independent weighted signals when the vehicle type is known.
fallback_notice tells the generator when the list only meets the requested
certification through a newer compatible code, or only in another viscosity.

Every returned candidate is an entry of the catalog passed in; nothing is
synthesized.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .catalog import CatalogEntry
from .certification import compatible_upgrades, exact_match, has_certification, substring_match
from .intent import Intent, MatchMethod, SearchTask
from .knowledge.knowledge_store import KnowledgeStore
from .motorcycle_rules import MANUAL, SCOOTER, entry_sub_types, requested_sub_type, synthetic_grade
from .utils import contains_any, keyword_in, normalize_text, viscosity_grades

logger = logging.getLogger("lubebot.search")

SHORT_CIRCUIT_THRESHOLD = 5
KEYWORD_RESULT_LIMIT = 10
EXPANSION_MAX_RESULTS = 20
EXPANSION_MAX_TITLES = 3
DEFAULT_SKU_PATTERN = r"LM[0-9]{4,5}(?![0-9])"

WEIGHT_RECOMMENDED_PART = 200
WEIGHT_SUB_TYPE = 100
PENALTY_SUB_TYPE_CONFLICT = -50
WEIGHT_EXACT_CERT = 80
WEIGHT_CERT_SUBSTRING = 60
WEIGHT_CERT_UPGRADE = 40
WEIGHT_VISCOSITY = 30
WEIGHT_FULL_SYNTHETIC = 50
WEIGHT_VEHICLE_KEYWORD = 20
WEIGHT_CATEGORY_VEHICLE = 10

CERT_UPGRADE_NOTICE = (
    "No listed product carries {requested}. The products below carry {upgrade}, which is "
    "backward compatible with {requested}; say so when recommending them."
)
VISCOSITY_FALLBACK_NOTICE = (
    "No listed product carries both {requested} and {viscosity}. The products below meet "
    "{requested} in other viscosities; say so and put the certification first."
)

DEFAULT_SEARCH_FIELDS = ["title", "content", "word1", "word2", "sort", "partno"]
DEFAULT_VEHICLE_KEYWORDS = {
    "motorcycle": ["motorbike", "motorcycle", "摩托車", "機車", "4t", "2t", "scooter"],
    "car": ["car", "auto", "汽車"],
}


@dataclass(frozen=True)
class ScoredCandidate:
    """A catalog entry with its ranking score and discovery position."""
    entry: CatalogEntry
    score: float
    order: int


def entry_key(entry: CatalogEntry) -> str:
    if entry.id:
        return entry.id
    return f"{entry.part_number}|{entry.title}|{entry.size}"


class _ResultSet:
    """Insertion-ordered, id-deduplicated collection of entries."""

    def __init__(self) -> None:
        self.entries: List[CatalogEntry] = []
        self._seen: Set[str] = set()

    def add(self, entry: CatalogEntry) -> bool:
        key = entry_key(entry)
        if key in self._seen:
            return False
        self._seen.add(key)
        self.entries.append(entry)
        return True

    def extend(self, entries: Iterable[CatalogEntry]) -> int:
        return sum(1 for entry in entries if self.add(entry))

    def __len__(self) -> int:
        return len(self.entries)


class ProductSearchEngine:
    """Rule-driven product retrieval; rule tables come from the knowledge store."""

    def __init__(self, store: KnowledgeStore) -> None:
        self._store = store

    def search(
        self, catalog: Sequence[CatalogEntry], message: str, intent: Intent
    ) -> List[ScoredCandidate]:
        """Purpose: Retrieve, expand and rank catalog candidates for one request.
        Inputs/Outputs: Catalog entries, the raw message and the Intent; returns a
            deduplicated list of ScoredCandidate, best first.
        Side Effects / State: Reads cached rule tables; logs phase counts.
        Dependencies: run_tasks, keyword_search, category_fallback, expand_titles, rank.
        Failure Modes: An empty catalog returns []; no exceptions for bad tasks.
        If Removed: Prompts carry no product list and recommendations are impossible.
        Testing Notes: Same inputs twice must give identical order.
        """
        # Phase 1: directed tasks from the classifier.
        catalog = list(catalog)
        if not catalog:
            logger.info("search skipped reason=empty_catalog")
            return []
        results = _ResultSet()
        phase1 = results.extend(self.run_tasks(catalog, intent.search_tasks))

        # Phase 2: keyword search when phase 1 found too little.
        phase2 = 0
        if len(results) < SHORT_CIRCUIT_THRESHOLD:
            keywords = self.collect_keywords(message, intent)
            phase2 = results.extend(self.keyword_search(catalog, keywords))

        # Phase 3: category label fallback when still empty.
        phase3 = 0
        if not results.entries:
            phase3 = results.extend(self.category_fallback(catalog, intent))

        expanded = 0
        if 0 < len(results) <= EXPANSION_MAX_RESULTS:
            expanded = results.extend(self.expand_titles(catalog, results.entries, message))

        ranked = self.rank(results.entries, intent)
        logger.info(
            "search done phase1=%s phase2=%s phase3=%s expanded=%s total=%s top=%s",
            phase1,
            phase2,
            phase3,
            expanded,
            len(ranked),
            ranked[0].entry.part_number if ranked else "-",
        )
        return ranked

    # -- Phase 1 --------------------------------------------------------------

    def run_tasks(
        self, catalog: Sequence[CatalogEntry], tasks: Iterable[SearchTask]
    ) -> List[CatalogEntry]:
        found: List[CatalogEntry] = []
        for task in tasks:
            matches = [entry for entry in catalog if _task_matches(entry, task)]
            found.extend(matches[: max(task.result_limit, 0)])
        return found

    # -- Phase 2 --------------------------------------------------------------

    def collect_keywords(self, message: str, intent: Intent) -> List[str]:
        """Message keywords via the mapping table, part numbers, then classifier keywords."""
        reference = self._store.load_named("search-reference") or {}
        mapping = reference.get("keyword_mapping") or {}
        haystack = normalize_text(message)
        keywords: List[str] = []
        for trigger, mapped in mapping.items():
            if keyword_in(haystack, normalize_text(trigger)):
                keywords.extend(str(value) for value in (mapped or []))
        keywords.extend(extract_part_numbers(message, self._sku_pattern()))
        keywords.extend(intent.search_keywords)
        return _dedupe_keywords(keywords)

    def keyword_search(
        self, catalog: Sequence[CatalogEntry], keywords: Sequence[str]
    ) -> List[CatalogEntry]:
        reference = self._store.load_named("search-reference") or {}
        search_fields = reference.get("search_fields") or DEFAULT_SEARCH_FIELDS
        found: List[CatalogEntry] = []
        for keyword in keywords:
            needle = normalize_text(keyword)
            if not needle:
                continue
            for field_name in search_fields:
                matches = [
                    entry
                    for entry in catalog
                    if needle in normalize_text(entry.field_value(field_name))
                ]
                found.extend(matches[:KEYWORD_RESULT_LIMIT])
        return found

    # -- Phase 3 --------------------------------------------------------------

    def category_label(self, intent: Intent) -> Optional[str]:
        reference = self._store.load_named("search-reference") or {}
        labels = (reference.get("category_labels") or {}).get(intent.product_category)
        if isinstance(labels, str):
            return labels
        if isinstance(labels, dict):
            if intent.vehicle_type and intent.vehicle_type in labels:
                return labels[intent.vehicle_type]
            return labels.get("default")
        return intent.product_category or None

    def category_fallback(self, catalog: Sequence[CatalogEntry], intent: Intent) -> List[CatalogEntry]:
        label = self.category_label(intent)
        if not label:
            return []
        needle = normalize_text(label)
        return [entry for entry in catalog if needle and needle in normalize_text(entry.category)]

    # -- Title expansion ------------------------------------------------------

    def expand_titles(
        self,
        catalog: Sequence[CatalogEntry],
        results: Sequence[CatalogEntry],
        message: str,
    ) -> List[CatalogEntry]:
        """Purpose: Pull in package-size variants sharing a result's exact title.
        Inputs/Outputs: Catalog, current results and message; returns extra entries
            (may include current ones; the caller deduplicates by id).
        Side Effects / State: None.
        Dependencies: extract_part_numbers to prioritise titles the user named.
        Failure Modes: Entries without a title are never expanded.
        If Removed: Users asking for "the 4L one" only see the 1L variant.
        Testing Notes: Expanding must never add an id already in the results.
        """
        # Titles of part numbers named in the message go first, then discovery order.
        mentioned = set(extract_part_numbers(message, self._sku_pattern()))
        ordered = [entry for entry in results if entry.part_number in mentioned]
        ordered += [entry for entry in results if entry.part_number not in mentioned]
        titles: List[str] = []
        for entry in ordered:
            title = entry.title.strip()
            if title and title not in titles:
                titles.append(title)
            if len(titles) >= EXPANSION_MAX_TITLES:
                break
        return [entry for title in titles for entry in catalog if entry.title.strip() == title]

    # -- Ranking --------------------------------------------------------------

    def rank(self, entries: Sequence[CatalogEntry], intent: Intent) -> List[ScoredCandidate]:
        """Purpose: Score and order candidates; discovery order breaks ties.
        Inputs/Outputs: Candidate entries and the Intent; returns ScoredCandidate list.
        Side Effects / State: None; a pure function of its inputs and rule tables.
        Dependencies: score_entry, synthetic_grade.
        Failure Modes: Unknown vehicle type scores every entry 0 (order unchanged).
        If Removed: The generator sees candidates in arbitrary discovery order.
        Testing Notes: A scooter-only entry must rank below a JASO MA2 entry for a
            manual motorcycle.
        """
        # Score only when the vehicle type is known.
        rules = self._store.load_named("ai-analysis-rules") or {}
        reference = self._store.load_named("search-reference") or {}
        sub_type = requested_sub_type(intent, rules) if intent.vehicle_type else None
        scored = [
            ScoredCandidate(
                entry=entry,
                score=self.score_entry(entry, intent, sub_type, rules, reference) if intent.vehicle_type else 0,
                order=index,
            )
            for index, entry in enumerate(entries)
        ]

        def sort_key(candidate: ScoredCandidate):
            grade = synthetic_grade(candidate.entry.title, rules) if intent.prefer_full_synthetic else 0
            return (-candidate.score, -grade, candidate.order)

        return sorted(scored, key=sort_key)

    def score_entry(
        self,
        entry: CatalogEntry,
        intent: Intent,
        sub_type: Optional[str],
        rules: Dict[str, Any],
        reference: Dict[str, Any],
    ) -> float:
        score = 0.0
        if intent.recommended_part_number and entry.part_number == intent.recommended_part_number.upper():
            score += WEIGHT_RECOMMENDED_PART

        if sub_type:
            tags = entry_sub_types(entry, rules)
            conflicting = MANUAL if sub_type == SCOOTER else SCOOTER
            if sub_type in tags:
                score += WEIGHT_SUB_TYPE
            elif conflicting in tags:
                score += PENALTY_SUB_TYPE_CONFLICT

        exact_hit = False
        loose_hit = False
        upgrade_hit = False
        compatibility = reference.get("certification_compatibility")
        for cert in intent.certifications:
            if exact_match(cert, entry.certification_text):
                exact_hit = True
            elif substring_match(cert, entry.certification_text):
                loose_hit = True
            elif any(
                has_certification(entry.certification_text, newer)
                for newer in compatible_upgrades(cert, compatibility)
            ):
                upgrade_hit = True
        if exact_hit:
            score += WEIGHT_EXACT_CERT
        if loose_hit:
            score += WEIGHT_CERT_SUBSTRING
        if upgrade_hit:
            score += WEIGHT_CERT_UPGRADE

        if intent.viscosity and intent.viscosity in _entry_grades(entry):
            score += WEIGHT_VISCOSITY

        if intent.prefer_full_synthetic and synthetic_grade(entry.title, rules) >= 3:
            score += WEIGHT_FULL_SYNTHETIC

        vehicle_keywords = (reference.get("vehicle_keywords") or DEFAULT_VEHICLE_KEYWORDS).get(
            intent.vehicle_type
        ) or []
        if vehicle_keywords and contains_any(entry.title, list(vehicle_keywords)):
            score += WEIGHT_VEHICLE_KEYWORD

        category_tokens = (reference.get("vehicle_category_tokens") or {}).get(intent.vehicle_type) or [
            intent.vehicle_type
        ]
        if contains_any(entry.category, list(category_tokens)):
            score += WEIGHT_CATEGORY_VEHICLE
        return score

    def fallback_notice(self, candidates: Sequence[ScoredCandidate], intent: Intent) -> Optional[str]:
        """Purpose: Explain a certification upgrade or a relaxed viscosity to the generator.
        Inputs/Outputs: Ranked candidates and the Intent; returns notice text or None.
        Side Effects / State: Reads the compatibility table; logs which fallback applied.
        Dependencies: has_certification, compatible_upgrades, viscosity_grades.
        Failure Modes: No candidates or no requested certification returns None.
        If Removed: The generator presents API SP oils as if they were the API SN
            the customer asked for.
        Testing Notes: Ask for "API SL" + "5W-30" over the sample catalog.
        """
        # The first requested certification is the customer's primary constraint.
        if not candidates or not intent.certifications:
            return None
        requested = intent.certifications[0]
        entries = [candidate.entry for candidate in candidates]
        certified = [entry for entry in entries if has_certification(entry.certification_text, requested)]
        if certified:
            if intent.viscosity and not any(intent.viscosity in _entry_grades(entry) for entry in certified):
                logger.info("search fallback=viscosity cert=%s viscosity=%s", requested, intent.viscosity)
                return VISCOSITY_FALLBACK_NOTICE.format(requested=requested, viscosity=intent.viscosity)
            return None
        reference = self._store.load_named("search-reference") or {}
        for newer in compatible_upgrades(requested, reference.get("certification_compatibility")):
            if any(has_certification(entry.certification_text, newer) for entry in entries):
                logger.info("search fallback=cert_upgrade cert=%s upgrade=%s", requested, newer)
                return CERT_UPGRADE_NOTICE.format(requested=requested, upgrade=newer)
        return None

    def _sku_pattern(self) -> str:
        rules = self._store.load_section("anti-hallucination-rules", "product_validation") or {}
        pattern = rules.get("sku_pattern") if isinstance(rules, dict) else None
        return pattern or DEFAULT_SKU_PATTERN


def extract_part_numbers(text: str, pattern: str = DEFAULT_SKU_PATTERN) -> List[str]:
    """Unique, uppercased part numbers in order of appearance."""
    if not text:
        return []
    found: List[str] = []
    for match in re.finditer(pattern, text, re.IGNORECASE):
        code = match.group(0).upper()
        if code not in found:
            found.append(code)
    return found


def _task_matches(entry: CatalogEntry, task: SearchTask) -> bool:
    value = entry.field_value(task.field)
    if not value:
        return False
    if normalize_text(task.field).replace("_", "") in ("cert", "certification"):
        if task.match_method is MatchMethod.EQUALS:
            return exact_match(task.value, value)
        return substring_match(task.value, value)
    wanted = normalize_text(task.value)
    actual = normalize_text(value)
    if task.match_method is MatchMethod.EQUALS:
        return actual == wanted
    return bool(wanted) and wanted in actual


def _dedupe_keywords(keywords: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for keyword in keywords:
        key = normalize_text(str(keyword))
        if key and key not in seen:
            seen.add(key)
            result.append(str(keyword).strip())
    return result


def _entry_grades(entry: CatalogEntry) -> List[str]:
    return viscosity_grades(entry.viscosity_text) or viscosity_grades(entry.title)
