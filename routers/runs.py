"""Run routes: execute a prompt, browse run history, list models.

Runs are append-only; there is no update or delete endpoint.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

import auth
import db
from providers import CompletionProvider, ModelCatalog, get_catalog, get_provider
from schemas import RunRequest
from simulator import PromptNotFoundError, RunFailedError, RunStoreError, execute_run

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])


def get_run_provider() -> CompletionProvider:
    """FastAPI dependency: the configured provider (overridden in tests)."""
    return get_provider()


def get_model_catalog() -> ModelCatalog:
    """FastAPI dependency: the model catalog."""
    return get_catalog()


@router.get("/api/models")
async def list_models(
    catalog: ModelCatalog = Depends(get_model_catalog),
    session: auth.Session = Depends(auth.get_session),
):
    """Models offered in the run picker, with $/1K-token prices."""
    return {"models": catalog.list()}


@router.post("/api/runs")
async def create_run(
    body: RunRequest,
    request: Request,
    session: auth.Session = Depends(auth.get_session),
    provider: CompletionProvider = Depends(get_run_provider),
    catalog: ModelCatalog = Depends(get_model_catalog),
):
    """Execute a prompt against a model and record the run."""
    if body.model not in catalog:
        return JSONResponse({"error": f"Unknown model '{body.model}'"}, status_code=422)

    try:
        run = await execute_run(session, body.prompt_id, body.model, provider, catalog)
    except PromptNotFoundError:
        return JSONResponse({"error": "Prompt not found"}, status_code=404)
    except RunFailedError as e:
        return JSONResponse(
            {"error": f"Model call failed: {e.message}", "run": e.run},
            status_code=502,
        )
    except RunStoreError:
        return JSONResponse({"error": "Failed to save run"}, status_code=500)

    await db.log_audit(
        user_id=session.user_id,
        username=session.email,
        action="run_create",
        resource_type="run",
        resource_id=run["id"],
        detail={"prompt_id": body.prompt_id, "model": body.model},
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", ""),
    )
    return {"status": "ok", "run": run}


@router.get("/api/runs")
async def list_runs(
    prompt_id: str = "",
    limit: int = 50,
    session: auth.Session = Depends(auth.get_session),
):
    """Run history, newest first."""
    limit = max(1, min(limit, 500))
    runs = await db.get_runs(session.user_id, prompt_id=prompt_id or None, limit=limit)
    return {"runs": runs}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, session: auth.Session = Depends(auth.get_session)):
    """Get a single run."""
    run = await db.get_run(run_id, session.user_id)
    if not run:
        return JSONResponse({"error": "Run not found"}, status_code=404)
    return run
