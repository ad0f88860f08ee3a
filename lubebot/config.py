from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

MAX_SEARCH_LIMIT = 30


@dataclass(frozen=True)
class Settings:
    """Configuration container for upstream services, knowledge data, and limits."""
    gemini_api_key: str
    gemini_model: str
    catalog_url: str
    product_base_url: str
    knowledge_dir: Path
    prompts_dir: Path
    catalog_ttl_sec: float
    knowledge_ttl_sec: float
    upstream_timeout_sec: float
    upstream_max_attempts: int
    upstream_backoff_sec: float
    history_turns: int
    classifier_history_turns: int
    search_limit: int


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-numeric TTL/timeout/retry env values raise ValueError.
    If Removed: Catalog, classifier, and generation collaborators cannot be wired.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Resolve knowledge and prompt paths, then build Settings.
    knowledge_dir = os.getenv("KNOWLEDGE_DIR")
    if knowledge_dir:
        knowledge_path = Path(knowledge_dir)
    else:
        knowledge_path = (BASE_DIR / "data" / "knowledge").resolve()

    prompts_dir = (BASE_DIR / "prompts").resolve()
    search_limit = int(os.getenv("SEARCH_LIMIT", "20"))

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
        catalog_url=os.getenv(
            "CATALOG_URL", "https://www.liqui-moly-tw.com/_functions/products"
        ),
        product_base_url=os.getenv(
            "PRODUCT_BASE_URL", "https://www.liqui-moly-tw.com/products/"
        ),
        knowledge_dir=knowledge_path,
        prompts_dir=prompts_dir,
        catalog_ttl_sec=float(os.getenv("CATALOG_TTL_SEC", "1800")),
        knowledge_ttl_sec=float(os.getenv("KNOWLEDGE_TTL_SEC", "3600")),
        upstream_timeout_sec=float(os.getenv("UPSTREAM_TIMEOUT_SEC", "15")),
        upstream_max_attempts=int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")),
        upstream_backoff_sec=float(os.getenv("UPSTREAM_BACKOFF_SEC", "1.0")),
        history_turns=int(os.getenv("HISTORY_TURNS", "10")),
        classifier_history_turns=int(os.getenv("CLASSIFIER_HISTORY_TURNS", "4")),
        search_limit=max(1, min(search_limit, MAX_SEARCH_LIMIT)),
    )
