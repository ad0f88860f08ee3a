from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

from .agent_pipeline import AdvisorPipeline, build_pipeline
from .config import load_settings
from .errors import EmptyMessageError
from .models import ChatRequest, ChatResponse

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("lubebot").setLevel(log_level)

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def create_app(pipeline: AdvisorPipeline) -> FastAPI:
    """Purpose: Build the FastAPI application around one advisor pipeline.
    Inputs/Outputs: Input is an AdvisorPipeline; returns a FastAPI app.
    Side Effects / State: None; the app keeps no sessions, callers send history.
    Dependencies: FastAPI, ChatRequest/ChatResponse models.
    Failure Modes: Empty messages become HTTP 400; other errors surface as 500.
    If Removed: The pipeline has no network surface.
    Testing Notes: Use fastapi.testclient.TestClient with a pipeline built from fakes.
    """
    # Register routes over the injected pipeline.
    app = FastAPI(title="LIQUI MOLY Product Advisor")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(request: ChatRequest) -> ChatResponse:
        """Purpose: Answer one chat message with the advisor pipeline.
        Inputs/Outputs: Input is ChatRequest; output is ChatResponse.
        Side Effects / State: May refill the catalog cache and call Gemini.
        Dependencies: AdvisorPipeline.reply.
        Failure Modes: Blank message returns 400.
        If Removed: Core chat functionality is unavailable.
        Testing Notes: Post {"message": "  "} and expect 400.
        """
        # Map the request onto the pipeline and back.
        history = [turn.model_dump() for turn in request.history]
        try:
            result = await pipeline.reply(
                request.message,
                history,
                catalog_context_override=request.product_context,
            )
        except EmptyMessageError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        validation = result.validation
        return ChatResponse(
            answer_text=result.answer_text,
            intent_type=result.pipeline.intent.type.value,
            used_ai_classifier=result.pipeline.used_ai_classifier,
            invalid_identifiers=list(validation.invalid_identifiers) if validation else [],
            thinking_logs=result.pipeline.thinking_logs,
        )

    return app


settings = load_settings()
app = create_app(build_pipeline(settings))
