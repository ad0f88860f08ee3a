"""Advisor pipeline orchestration.

Role:
    Wires the Intent Resolver, Knowledge Assembler, Product Search engine and
    Prompt Composer into one request flow, and optionally runs generation plus
    the hallucination guard.

Pipeline data contract (fields passed across steps on PipelineContext):
    - intent: resolved Intent (immutable).
    - knowledge: KnowledgeBundle for that intent.
    - catalog / candidates / product_notice / search_ran: product search outputs.
    - search_notice: certification-upgrade or viscosity fallback explanation.
    - prompt_text: composed instruction document.

Step contracts:
    resolve:
        Reads user_message + history; sets intent. Never raises.
    gather:
        Runs knowledge assembly and product search concurrently. Search is skipped
        for non-recommendation intents and when the caller supplied its own
        product context.
    notice:
        Skipped unless candidates exist and a certification was requested; sets
        search_notice when the list only meets it through a fallback.
    compose:
        Builds prompt_text from knowledge, intent and candidates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .adk_runtime import AdkAgent, AdkStep
from .catalog import CatalogCache, CatalogProvider, CatalogSnapshot
from .config import Settings
from .errors import CatalogUnavailableError, EmptyMessageError, UpstreamUnavailableError
from .gemini_client import GeminiClient, build_history_contents
from .intent import Intent
from .intent_resolver import IntentClassifier, IntentResolver
from .knowledge.assembler import KnowledgeAssembler, KnowledgeBundle
from .knowledge.knowledge_store import KnowledgeStore
from .product_search import ProductSearchEngine, ScoredCandidate
from .prompt_composer import ComposeContext, compose
from .response_validator import ResponseValidator, ValidationResult

logger = logging.getLogger("lubebot.pipeline")

OVERRIDE_MIN_CHARS = 100
SEARCH_FAILED_NOTICE = (
    "⚠️ Product search failed. Reply only: \"Sorry, the product database cannot be searched "
    "right now, please try again later.\""
)
CATALOG_EMPTY_NOTICE = (
    "⚠️ No product data is available. Reply only: \"Sorry, the product database is "
    "temporarily unavailable.\""
)
APOLOGY_TEXT = "Sorry, I can't answer that right now. Please try again in a moment."


@dataclass
class PipelineContext:
    """Mutable context passed through each pipeline step."""
    user_message: str
    chat_history: List[dict]
    catalog_context_override: Optional[str] = None
    intent: Optional[Intent] = None
    knowledge: Optional[KnowledgeBundle] = None
    catalog: Optional[CatalogSnapshot] = None
    candidates: List[ScoredCandidate] = field(default_factory=list)
    product_notice: Optional[str] = None
    search_notice: Optional[str] = None
    search_ran: bool = False
    prompt_text: str = ""
    thinking_logs: List[Dict[str, str]] = field(default_factory=list)

    def log(self, step: str, detail: str, status: str = "success") -> None:
        """Purpose: Append a structured log entry for API responses and debugging.
        Inputs/Outputs: Inputs are step, detail, status; no return value.
        Side Effects / State: Mutates thinking_logs on the context.
        Dependencies: Used by every pipeline step.
        Failure Modes: None; always appends.
        If Removed: Callers lose the per-request trace returned by /api/chat.
        Testing Notes: Ensure entries appear in ChatResponse.thinking_logs.
        """
        # Store a normalized log entry.
        self.thinking_logs.append({"step": step, "detail": detail, "status": status})

    @property
    def has_override(self) -> bool:
        return len((self.catalog_context_override or "").strip()) > OVERRIDE_MIN_CHARS


@dataclass
class PipelineResult:
    """What answer() hands back to the transport layer."""
    intent: Intent
    knowledge: KnowledgeBundle
    prompt_text: str
    used_ai_classifier: bool
    candidates: List[ScoredCandidate]
    catalog: Optional[CatalogSnapshot]
    thinking_logs: List[Dict[str, str]]


@dataclass
class ReplyResult:
    """Final, validated answer text plus the pipeline result behind it."""
    answer_text: str
    pipeline: PipelineResult
    validation: Optional[ValidationResult] = None


class AdvisorPipeline:
    def __init__(
        self,
        store: KnowledgeStore,
        resolver: IntentResolver,
        assembler: KnowledgeAssembler,
        search_engine: ProductSearchEngine,
        catalog_cache: CatalogCache,
        validator: ResponseValidator,
        gemini: Optional[GeminiClient] = None,
        product_base_url: str = "",
        history_turns: int = 10,
    ) -> None:
        """Purpose: Hold injected collaborators and build the step runner.
        Inputs/Outputs: Collaborators and limits; no return value.
        Side Effects / State: Constructs an AdkAgent with ordered steps.
        Dependencies: AdkAgent/AdkStep and the step methods on this class.
        Failure Modes: None at init; steps own their own fallbacks.
        If Removed: The chat endpoint has nothing to call.
        Testing Notes: Build with a fake classifier and an httpx MockTransport.
        """
        # Store dependencies and build the step runner.
        self._store = store
        self._resolver = resolver
        self._assembler = assembler
        self._search_engine = search_engine
        self._catalog_cache = catalog_cache
        self._validator = validator
        self._gemini = gemini
        self._product_base_url = product_base_url
        self._history_turns = history_turns
        self._agent = AdkAgent(
            steps=[
                AdkStep("resolve", self._step_resolve),
                AdkStep("gather", self._step_gather),
                AdkStep("notice", self._step_notice, skip_if=_nothing_to_explain),
                AdkStep("compose", self._step_compose),
            ]
        )

    async def answer(
        self,
        message: str,
        history: Optional[List[dict]] = None,
        catalog_context_override: Optional[str] = None,
    ) -> PipelineResult:
        """Purpose: Decide intent, load knowledge and products, and compose the prompt.
        Inputs/Outputs: Message, optional history and optional caller product context;
            returns a PipelineResult.
        Side Effects / State: May refill the catalog cache; logs each step.
        Dependencies: AdkAgent.run over resolve/gather/compose.
        Failure Modes: Raises EmptyMessageError for blank input before any stage;
            every upstream failure degrades to a textual fallback instead.
        If Removed: No prompt can be produced for the generation service.
        Testing Notes: A price question must return a prompt with no product list.
        """
        # Reject empty input, then run the steps.
        if not message or not message.strip():
            raise EmptyMessageError("message is required")
        context = PipelineContext(
            user_message=message.strip(),
            chat_history=list(history or []),
            catalog_context_override=catalog_context_override,
        )
        logger.info("question=%s history=%s", context.user_message, len(context.chat_history))
        await self._agent.run(context)
        return PipelineResult(
            intent=context.intent,
            knowledge=context.knowledge,
            prompt_text=context.prompt_text,
            used_ai_classifier=context.intent.used_ai_classifier,
            candidates=list(context.candidates),
            catalog=context.catalog,
            thinking_logs=context.thinking_logs,
        )

    async def reply(
        self,
        message: str,
        history: Optional[List[dict]] = None,
        catalog_context_override: Optional[str] = None,
    ) -> ReplyResult:
        """Purpose: Run answer(), generate text, and screen it for invented products.
        Inputs/Outputs: Same as answer(); returns ReplyResult with the final text.
        Side Effects / State: One generation call; may read the catalog cache.
        Dependencies: answer, GeminiClient.generate_content, ResponseValidator.
        Failure Modes: Missing client, blocked or failed generation yields the
            fixed apology string; never raises after input validation.
        If Removed: Only prompts are produced; the HTTP endpoint has no answer.
        Testing Notes: Stub generation to cite an unknown part number.
        """
        # Compose, generate, then validate product answers.
        result = await self.answer(message, history, catalog_context_override)
        text = await self._generate(result.prompt_text, message, history or [])
        if not text:
            result.thinking_logs.append({"step": "generation", "detail": "apology", "status": "fallback"})
            return ReplyResult(answer_text=APOLOGY_TEXT, pipeline=result)
        if not result.intent.wants_products:
            return ReplyResult(answer_text=text, pipeline=result)

        snapshot = result.catalog
        if snapshot is None:
            try:
                snapshot = await self._catalog_cache.get()
            except CatalogUnavailableError as exc:
                logger.warning("validator catalog_unavailable error=%s", exc)
        known = snapshot.part_numbers if snapshot is not None else frozenset()
        validation = self._validator.validate(text, known)
        result.thinking_logs.append(
            {
                "step": "validate",
                "detail": f"invalid={','.join(validation.invalid_identifiers) or '-'}",
                "status": "fallback" if validation.has_invalid_identifiers else "success",
            }
        )
        return ReplyResult(answer_text=validation.sanitized_text, pipeline=result, validation=validation)

    async def _generate(self, prompt_text: str, message: str, history: List[dict]) -> str:
        if self._gemini is None:
            logger.info("generation skipped reason=no_client")
            return ""
        turns = [*history, {"role": "user", "content": message}]
        contents = build_history_contents(turns, self._history_turns + 1)
        try:
            return await self._gemini.generate_content(contents, system_instruction=prompt_text)
        except UpstreamUnavailableError as exc:
            logger.warning("generation failed error=%s", exc)
            return ""

    async def _step_resolve(self, context: PipelineContext) -> None:
        intent = await self._resolver.resolve(context.user_message, context.chat_history)
        context.intent = intent
        logger.debug("intent summary=%s", intent.summary())
        context.log(
            "resolve",
            f"type={intent.type.value} source={'ai' if intent.used_ai_classifier else 'rules'} "
            f"vehicle={intent.vehicle_type or '-'} category={intent.product_category}",
        )

    async def _step_gather(self, context: PipelineContext) -> None:
        """Purpose: Assemble knowledge and search products concurrently.
        Inputs/Outputs: Input is PipelineContext; sets knowledge and search fields.
        Side Effects / State: May refill the catalog cache.
        Dependencies: KnowledgeAssembler.assemble, _search.
        Failure Modes: Search failures become product_notice text, never exceptions.
        If Removed: Prompts have neither knowledge nor products.
        Testing Notes: Non-recommendation intents must not touch the catalog cache.
        """
        # Knowledge is file-backed, so it runs on a worker thread next to the search.
        intent = context.intent
        skip_search = not intent.wants_products or context.has_override
        tasks = [asyncio.to_thread(self._assembler.assemble, intent)]
        if not skip_search:
            tasks.append(self._search(context))
        knowledge, *_ = await asyncio.gather(*tasks)
        context.knowledge = knowledge
        context.log("knowledge", f"sections={','.join(knowledge.loaded_sections())}")
        if skip_search:
            reason = "override" if context.has_override else "not_product_intent"
            context.log("search", f"skipped reason={reason}", status="skipped")

    async def _search(self, context: PipelineContext) -> None:
        context.search_ran = True
        try:
            snapshot = await self._catalog_cache.get()
        except CatalogUnavailableError as exc:
            logger.warning("search catalog_unavailable error=%s", exc)
            context.product_notice = SEARCH_FAILED_NOTICE
            context.log("search", "catalog unavailable", status="fallback")
            return
        context.catalog = snapshot
        if not len(snapshot):
            context.product_notice = CATALOG_EMPTY_NOTICE
            context.log("search", "catalog empty", status="fallback")
            return
        try:
            context.candidates = self._search_engine.search(
                snapshot.entries, context.user_message, context.intent
            )
        except Exception as exc:
            logger.error("search failed error=%r", exc)
            context.product_notice = SEARCH_FAILED_NOTICE
            context.log("search", "search error", status="fallback")
            return
        top = ",".join(candidate.entry.part_number for candidate in context.candidates[:3])
        context.log("search", f"candidates={len(context.candidates)} top={top or '-'}")

    async def _step_notice(self, context: PipelineContext) -> None:
        context.search_notice = self._search_engine.fallback_notice(context.candidates, context.intent)
        if context.search_notice:
            context.log("notice", "certification or viscosity fallback", status="fallback")

    async def _step_compose(self, context: PipelineContext) -> None:
        context.prompt_text = compose(
            ComposeContext(
                knowledge=context.knowledge,
                intent=context.intent,
                candidates=context.candidates,
                product_base_url=self._product_base_url,
                product_notice=context.product_notice,
                search_notice=context.search_notice,
                catalog_context_override=(
                    context.catalog_context_override if context.has_override else None
                ),
                search_ran=context.search_ran,
                jaso_rules=self._store.load_named("ai-analysis-rules"),
            )
        )
        context.log("compose", f"prompt_chars={len(context.prompt_text)}")


def _nothing_to_explain(context: PipelineContext) -> bool:
    return not context.candidates or not context.intent.certifications


def build_pipeline(settings: Settings) -> AdvisorPipeline:
    """Purpose: Wire every collaborator from Settings.
    Inputs/Outputs: Input is Settings; returns an AdvisorPipeline.
    Side Effects / State: Configures the Gemini SDK when a key is present.
    Dependencies: All pipeline components.
    Failure Modes: Without GEMINI_API_KEY the pipeline runs rules-only and
        reply() returns the apology string.
    If Removed: app.py would need to duplicate the wiring.
    Testing Notes: Build with an empty key and check answer() still works.
    """
    # The Gemini client is optional; rules and prompts work without it.
    store = KnowledgeStore(settings.knowledge_dir, ttl_sec=settings.knowledge_ttl_sec)
    gemini = GeminiClient(settings) if settings.gemini_api_key else None
    classifier = None
    if gemini is not None:
        classifier = IntentClassifier(
            gemini,
            settings.prompts_dir / "intent_analysis.txt",
            history_turns=settings.classifier_history_turns,
        )
    provider = CatalogProvider(
        settings.catalog_url,
        timeout=settings.upstream_timeout_sec,
        attempts=settings.upstream_max_attempts,
        backoff=settings.upstream_backoff_sec,
    )
    return AdvisorPipeline(
        store=store,
        resolver=IntentResolver(store, classifier, search_limit=settings.search_limit),
        assembler=KnowledgeAssembler(store),
        search_engine=ProductSearchEngine(store),
        catalog_cache=CatalogCache(provider, ttl_sec=settings.catalog_ttl_sec),
        validator=ResponseValidator(store),
        gemini=gemini,
        product_base_url=settings.product_base_url,
        history_turns=settings.history_turns,
    )
