"""Run execution: prompt + model -> completion -> persisted run row."""

import logging
from typing import Optional

import db
from auth import Session
from providers import CompletionProvider, ModelCatalog, ProviderError, get_catalog

logger = logging.getLogger(__name__)


class PromptNotFoundError(Exception):
    """The prompt does not exist or belongs to another user."""


class RunStoreError(Exception):
    """The run row could not be written."""


class RunFailedError(Exception):
    """The provider failed; a `failed` run row was recorded."""

    def __init__(self, message: str, run: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.run = run


async def execute_run(
    session: Session,
    prompt_id: str,
    model: str,
    provider: CompletionProvider,
    catalog: Optional[ModelCatalog] = None,
) -> dict:
    """Execute a prompt against `model` and record the run. Returns the run row.

    Nothing is written when the prompt cannot be resolved. Each call inserts
    exactly one row; two calls create two runs.
    """
    catalog = catalog or get_catalog()

    prompt = await db.get_prompt(prompt_id, session.user_id)
    if not prompt:
        raise PromptNotFoundError(f"Prompt '{prompt_id}' not found")

    logger.info(
        "Executing prompt %s with %s via %s", prompt_id, model, provider.name,
        extra={"user_id": session.user_id, "model": model, "provider": provider.name},
    )

    try:
        completion = await provider.complete(prompt, model)
    except ProviderError as e:
        logger.warning("Provider %s failed for prompt %s: %s", provider.name, prompt_id, e.message)
        run = await _store(
            session, prompt_id, model,
            response=None, tokens_used=0, latency_ms=e.latency_ms, cost_usd=0.0,
            status="failed", error_message=e.message,
        )
        raise RunFailedError(e.message, run)

    cost = catalog.cost(model, completion.tokens_used)
    if cost == 0.0 and model not in catalog and completion.cost_usd:
        cost = round(completion.cost_usd, 6)

    return await _store(
        session, prompt_id, model,
        response=completion.response,
        tokens_used=completion.tokens_used,
        latency_ms=completion.latency_ms,
        cost_usd=cost,
        status="completed",
    )


async def _store(session: Session, prompt_id: str, model: str, **fields) -> dict:
    try:
        run = await db.save_run(session.user_id, prompt_id, model, **fields)
    except Exception as e:
        logger.exception("Failed to save run for prompt %s", prompt_id)
        raise RunStoreError(str(e)) from e
    if not run:
        raise RunStoreError("Run row was not persisted")
    return run
