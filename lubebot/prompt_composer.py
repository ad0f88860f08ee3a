"""Prompt composition from independent section builders.

Each builder takes the same ComposeContext and returns text or None. The
composer keeps the fixed builder order, drops empty sections and joins the
rest, so a section that has nothing to say costs no tokens.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .intent import Intent
from .knowledge.assembler import KnowledgeBundle
from .motorcycle_rules import jaso_type
from .product_search import ScoredCandidate
from .utils import truncate

DEFAULT_IDENTITY = (
    "You are the LIQUI MOLY Taiwan product advisor. Answer questions about engine oils, "
    "additives and care products accurately and briefly."
)
PRICE_FALLBACK = "please ask the retailer"
NO_MATCH_NOTE = (
    "No catalog product matched this request. Say so honestly, ask for the missing vehicle "
    "details, and do not name any product or part number."
)
MAX_PRODUCTS = 10
MAX_CERTS_SHOWN = 5
DESCRIPTION_CHARS = 120
MAX_RECOMMENDED = 3
MAX_ANSWER_CHARS = 300


@dataclass
class ComposeContext:
    """Inputs shared by every section builder."""
    knowledge: KnowledgeBundle
    intent: Intent
    candidates: Sequence[ScoredCandidate] = ()
    product_base_url: str = ""
    product_notice: Optional[str] = None
    search_notice: Optional[str] = None
    catalog_context_override: Optional[str] = None
    search_ran: bool = False
    jaso_rules: Optional[dict] = None


SectionBuilder = Callable[[ComposeContext], Optional[str]]


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=1)


def _lines(title: str, rows: List[str]) -> Optional[str]:
    rows = [row for row in rows if row]
    if not rows:
        return None
    return "\n".join([f"## {title}", *rows])


def identity_section(ctx: ComposeContext) -> Optional[str]:
    core = ctx.knowledge.core_identity or {}
    rows = [core.get("identity") or DEFAULT_IDENTITY]
    if core.get("tone"):
        rows.append(f"Tone: {core['tone']}")
    rows.extend(f"- {item}" for item in core.get("principles") or [])
    rules = (ctx.knowledge.conversation_rules or {}).get("rules") or []
    rows.extend(f"- {rule}" for rule in rules)
    return _lines("Role and rules", rows)


def vehicle_facts_section(ctx: ComposeContext) -> Optional[str]:
    # Known facts are stated so the generator does not ask for them again.
    intent = ctx.intent
    rows = []
    if intent.vehicle_type:
        rows.append(f"- Vehicle type: {intent.vehicle_type}")
    if intent.vehicle_sub_type:
        rows.append(f"- Vehicle sub-type: {intent.vehicle_sub_type}")
    if intent.vehicle_brand:
        rows.append(f"- Brand: {intent.vehicle_brand}")
    if intent.vehicle_model:
        rows.append(f"- Model: {intent.vehicle_model}")
    if intent.additional_vehicles:
        rows.append(f"- Other vehicles mentioned: {', '.join(intent.additional_vehicles)}")
    if intent.viscosity:
        rows.append(f"- Viscosity: {intent.viscosity}")
    if intent.certifications:
        rows.append(f"- Required certifications: {', '.join(intent.certifications)}")
    if intent.is_motorcycle and intent.product_category == "oil" and not intent.is_electric_vehicle:
        rows.append(f"- Motorcycle oil must carry: {jaso_type(intent, ctx.jaso_rules)}")
    if intent.usage_scenario:
        rows.append(f"- Usage: {intent.usage_scenario}")
    if not rows:
        return None
    rows.append("Do not ask the customer again for any of the facts above.")
    return _lines("Confirmed customer facts", rows)


def clarification_section(ctx: ComposeContext) -> Optional[str]:
    # Details the classifier found missing; asking comes before recommending.
    missing = ctx.intent.needs_more_info
    if not missing:
        return None
    rows = [f"- {item}" for item in missing]
    rows.append(
        "Ask the customer for the details above in one short question before naming "
        "any specific product. Do not ask for anything already confirmed."
    )
    return _lines("Ask before recommending", rows)


def vehicle_spec_section(ctx: ComposeContext) -> Optional[str]:
    spec = ctx.knowledge.vehicle_spec
    if not spec:
        return None
    return _lines("Vehicle specification", [_dump(spec)])


def certification_section(ctx: ComposeContext) -> Optional[str]:
    cert = ctx.knowledge.certification
    if not cert:
        return None
    rows = []
    for group, entries in (cert.get("table") or {}).items():
        rows.append(f"[{group}]")
        if isinstance(entries, dict):
            rows.extend(f"- {code}: {text}" for code, text in entries.items())
        else:
            rows.append(_dump(entries))
    jaso = cert.get("jaso")
    if isinstance(jaso, dict):
        rows.append("[JASO]")
        rows.extend(f"- {text}" for text in jaso.values())
    return _lines("Certification reference", rows)


def symptom_section(ctx: ComposeContext) -> Optional[str]:
    guide = ctx.knowledge.symptom_guide
    if not guide:
        return None
    rows = []
    for item in guide:
        if not isinstance(item, dict):
            continue
        products = ", ".join(item.get("products") or [])
        rows.append(f"- {item.get('symptom', '')}: {products}. {item.get('advice', '')}".strip())
    return _lines("Symptom guide", rows)


def category_spec_section(ctx: ComposeContext) -> Optional[str]:
    spec = ctx.knowledge.category_spec
    if not spec:
        return None
    return _lines(f"Category notes ({spec.get('category', '')})", [spec.get("summary") or _dump(spec)])


def special_scenario_section(ctx: ComposeContext) -> Optional[str]:
    scenario = ctx.knowledge.special_scenario
    if not scenario:
        return None
    return _lines("Special situation", [scenario.get("text") or _dump(scenario)])


def templates_section(ctx: ComposeContext) -> Optional[str]:
    templates = ctx.knowledge.templates
    if not templates:
        return None
    rows = [f"- {name}: {text}" for name, text in templates.items()]
    urls = ctx.knowledge.urls or {}
    rows.extend(f"- link {name}: {url}" for name, url in urls.items() if name != "product_base_url")
    return _lines("Answer guidance", rows)


def format_candidate(index: int, candidate: ScoredCandidate, base_url: str) -> str:
    entry = candidate.entry
    certs = [part.strip() for part in re.split(r"[,;\n]", entry.certification_text) if part.strip()]
    cert_text = ", ".join(certs[:MAX_CERTS_SHOWN])
    if len(certs) > MAX_CERTS_SHOWN:
        cert_text += " ..."
    rows = [f"{index}. {entry.title}", f"   - Part number: {entry.part_number}"]
    if entry.size:
        rows.append(f"   - Size: {entry.size}")
    if entry.series:
        rows.append(f"   - Series: {entry.series}")
    if entry.viscosity_text:
        rows.append(f"   - Viscosity: {entry.viscosity_text}")
    if cert_text:
        rows.append(f"   - Certification: {cert_text}")
    if entry.category:
        rows.append(f"   - Category: {entry.category}")
    rows.append(f"   - Price: {entry.price or PRICE_FALLBACK}")
    link = entry.url(base_url)
    if link:
        rows.append(f"   - Link: {link}")
    if entry.description:
        rows.append(f"   - Description: {truncate(entry.description, DESCRIPTION_CHARS)}")
    return "\n".join(rows)


def product_section(ctx: ComposeContext) -> Optional[str]:
    # Precedence: caller override, unavailable notice, candidates, no-match note.
    if ctx.catalog_context_override:
        return _lines("Product list", [ctx.catalog_context_override.strip()])
    if ctx.product_notice:
        return _lines("Product list", [ctx.product_notice])
    if ctx.candidates:
        rows = [ctx.search_notice] if ctx.search_notice else []
        rows.append("Recommend only from this list:")
        rows.extend(
            format_candidate(index, candidate, ctx.product_base_url)
            for index, candidate in enumerate(ctx.candidates[:MAX_PRODUCTS], start=1)
        )
        return _lines("Product list", rows)
    if ctx.search_ran:
        return _lines("Product list", [NO_MATCH_NOTE])
    return None


def closing_section(ctx: ComposeContext) -> Optional[str]:
    rows = ["- Reply in the same language the customer used."]
    if ctx.intent.wants_products:
        rows.append(f"- Recommend at most {MAX_RECOMMENDED} products, only from the product list.")
        if ctx.product_base_url:
            rows.append(f"- Every product link must start with {ctx.product_base_url}")
    rows.append("- Never invent product names, part numbers, prices or links.")
    disclaimers = (ctx.knowledge.disclaimers or {}).get("disclaimers") or []
    rows.extend(f"- {text}" for text in disclaimers)
    rows.append(f"- Keep the answer under {MAX_ANSWER_CHARS} characters, plain text, no tables.")
    return _lines("Final reminders", rows)


SECTION_BUILDERS: List[SectionBuilder] = [
    identity_section,
    vehicle_facts_section,
    clarification_section,
    vehicle_spec_section,
    certification_section,
    symptom_section,
    category_spec_section,
    special_scenario_section,
    templates_section,
    product_section,
    closing_section,
]


def compose(ctx: ComposeContext, builders: Sequence[SectionBuilder] = SECTION_BUILDERS) -> str:
    """Purpose: Build the instruction document for the generation service.
    Inputs/Outputs: ComposeContext (knowledge, intent, candidates); returns text.
    Side Effects / State: None.
    Dependencies: The ordered SECTION_BUILDERS list.
    Failure Modes: Builders returning None or blank text are skipped.
    If Removed: The generator receives no grounding and invents products.
    Testing Notes: A price inquiry with no search must have no "Product list".
    """
    # Keep the fixed order; empty sections cost nothing.
    sections = [builder(ctx) for builder in builders]
    return "\n\n".join(section.strip() for section in sections if section and section.strip())
