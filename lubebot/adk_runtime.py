from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("lubebot.pipeline")


@dataclass
class AdkStep:
    """Step descriptor for the async pipeline runner."""
    name: str
    fn: Callable[[object], Awaitable[None]]
    skip_if: Optional[Callable[[object], bool]] = None


class AdkAgent:
    """Lightweight step runner executing async steps in a fixed order."""

    def __init__(self, steps: list[AdkStep]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of AdkStep; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond AdkStep definitions.
        Failure Modes: None; assumes awaitable callables in steps.
        If Removed: AdvisorPipeline has no way to sequence its stages.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = steps

    async def run(self, context: object) -> None:
        """Purpose: Await steps in order, honoring skip_if guards.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Step functions mutate the context; timings are logged.
        Dependencies: Depends on AdkStep.fn and AdkStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: answer() cannot run any stage.
        Testing Notes: Verify skip_if logic with simple steps.
        """
        # Iterate steps and honor skip_if guards.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                logger.debug("step=%s status=skipped", step.name)
                continue
            started = time.perf_counter()
            await step.fn(context)
            logger.debug(
                "step=%s status=done elapsed_ms=%.1f",
                step.name,
                (time.perf_counter() - started) * 1000,
            )
