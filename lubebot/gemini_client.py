from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import google.generativeai as genai
from google.generativeai import types as genai_types

from .config import Settings
from .errors import UpstreamUnavailableError
from .retry import async_retry

logger = logging.getLogger("lubebot.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
]

CLASSIFIER_TEMPERATURE = 0.1
CLASSIFIER_MAX_TOKENS = 800
CHAT_TEMPERATURE = 0.7
CHAT_MAX_TOKENS = 1024


class GeminiClient:
    """Async wrapper around the Gemini SDK with model caching, timeout and retries."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures SDK global API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if API key or model name is missing.
        If Removed: Neither AI classification nor answer generation can run.
        Testing Notes: Validate missing key raises ValueError.
        """
        # Configure API key and seed default model cache.
        self._settings = settings
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("GEMINI_MODEL is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._models: Dict[str, genai.GenerativeModel] = {}

    def _model(self, model: Optional[str], system_instruction: Optional[str]):
        # Only instruction-free models are cached; composed prompts differ per request.
        model_name = _normalize_model_name(model) if model else self._default_model
        if system_instruction:
            return genai.GenerativeModel(model_name, system_instruction=system_instruction)
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return self._models[model_name]

    async def generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = CLASSIFIER_TEMPERATURE,
        max_output_tokens: int = CLASSIFIER_MAX_TOKENS,
    ) -> str:
        """Purpose: Generate a single text response from a string prompt.
        Inputs/Outputs: Input is prompt string and optional model/config; returns text.
        Side Effects / State: May add a model to the internal cache.
        Dependencies: Uses generate_content_async through _call.
        Failure Modes: Raises UpstreamUnavailableError after timeouts/retries.
        If Removed: The intent classifier cannot call the LLM.
        Testing Notes: Patch _call and assert generation_config values.
        """
        # Single-turn request used by the classification prompt.
        return await self._call(
            self._model(model, None),
            prompt,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    async def generate_content(
        self,
        contents: List[dict],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = CHAT_TEMPERATURE,
        max_output_tokens: int = CHAT_MAX_TOKENS,
    ) -> str:
        """Purpose: Generate a response from role-tagged chat contents.
        Inputs/Outputs: Input is a list of {"role","parts"} entries plus the composed
            instruction text; returns the model text ("" when blocked).
        Side Effects / State: Builds an uncached model per system instruction.
        Dependencies: Uses generate_content_async through _call.
        Failure Modes: Raises UpstreamUnavailableError after timeouts/retries.
        If Removed: Answer generation in AdvisorPipeline.reply stops working.
        Testing Notes: Ensure empty contents still send the system instruction.
        """
        # Multi-turn request; the composed prompt travels as system instruction.
        return await self._call(
            self._model(model, system_instruction),
            contents,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    async def _call(self, model, payload, temperature: float, max_output_tokens: int) -> str:
        timeout = self._settings.upstream_timeout_sec

        async def attempt():
            return await asyncio.wait_for(
                model.generate_content_async(
                    payload,
                    generation_config={
                        "temperature": temperature,
                        "max_output_tokens": max_output_tokens,
                    },
                    safety_settings=DEFAULT_SAFETY_SETTINGS,
                ),
                timeout=timeout,
            )

        try:
            response = await async_retry(
                attempt,
                attempts=self._settings.upstream_max_attempts,
                backoff=self._settings.upstream_backoff_sec,
                label="gemini",
            )
        except Exception as exc:
            raise UpstreamUnavailableError(f"gemini call failed: {exc}") from exc
        return _response_text(response)


def _response_text(response) -> str:
    # Blocked candidates make `.text` raise ValueError.
    try:
        text: Optional[str] = getattr(response, "text", None)
    except ValueError:
        logger.info("gemini response blocked or empty")
        return ""
    return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient.
    Failure Modes: Returns empty string for falsy input.
    If Removed: Model caching may key the same model under two names.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned


def build_history_contents(history: List[dict], max_turns: int) -> List[dict]:
    """Purpose: Convert stored chat turns into Gemini role-tagged contents.
    Inputs/Outputs: Input is [{"role","content"}] turns; output keeps the last
        max_turns entries as alternating user/model contents.
    Side Effects / State: None.
    Dependencies: Used by AdvisorPipeline.reply before generation.
    Failure Modes: Non-dict and empty turns are skipped.
    If Removed: Generation loses conversational context.
    Testing Notes: Verify "assistant" maps to "model" and consecutive roles merge.
    """
    # Keep only the tail and merge same-role neighbours so roles alternate.
    contents: List[dict] = []
    recent = [turn for turn in (history or []) if isinstance(turn, dict)]
    if max_turns > 0:
        recent = recent[-max_turns:]
    for turn in recent:
        text = str(turn.get("content") or "").strip()
        if not text:
            continue
        role = "user" if turn.get("role") == "user" else "model"
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append({"text": text})
            continue
        contents.append({"role": role, "parts": [{"text": text}]})
    return contents
