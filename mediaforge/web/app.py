from __future__ import annotations

import asyncio
import hmac
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mediaforge.catalog.registry import list_models
from mediaforge.config import Settings, get_settings
from mediaforge.db.models import CreditLedger, Generation
from mediaforge.db.session import create_sessionmaker
from mediaforge.errors import InsufficientCredits, InvalidInput, MediaforgeError, NotFound, ProviderError
from mediaforge.providers.registry import build_adapters, close_adapters
from mediaforge.services.archiver import ResultArchiver
from mediaforge.services.costs import cost_table
from mediaforge.services.poller import SweepRunner
from mediaforge.services.settlement import SettlementEngine
from mediaforge.utils.logging import get_logger


logger = get_logger("api")

ERROR_STATUS = {
    InvalidInput: 400,
    NotFound: 404,
    InsufficientCredits: 402,
    ProviderError: 502,
}


def _error_response(exc: MediaforgeError) -> JSONResponse:
    status_code = 500
    for cls, code in ERROR_STATUS.items():
        if isinstance(exc, cls):
            status_code = code
            break
    body: Dict[str, Any] = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, InsufficientCredits):
        body["required"] = exc.required
        body["available"] = exc.available
    return JSONResponse(body, status_code=status_code)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def generation_payload(generation: Generation) -> Dict[str, Any]:
    return {
        "id": generation.id,
        "user_id": generation.user_id,
        "context_ref": generation.context_ref,
        "kind": generation.kind,
        "status": generation.status,
        "prompt": generation.prompt,
        "provider": generation.provider,
        "model": generation.model,
        "result_url": generation.result_url,
        "result_urls": generation.result_urls or [],
        "error_message": generation.error_message,
        "cost_credits": generation.cost_credits,
        "duration_seconds": generation.duration_seconds,
        "meta": generation.meta or {},
        "created_at": _iso(generation.created_at),
        "updated_at": _iso(generation.updated_at),
        "finished_at": _iso(generation.finished_at),
    }


def ledger_payload(entry: CreditLedger) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "kind": entry.kind,
        "generation_kind": entry.generation_kind,
        "generation_id": entry.generation_id,
        "description": entry.description,
        "created_at": _iso(entry.created_at),
    }


def _page_args(request: Request, default_limit: int) -> tuple[int, int]:
    try:
        page = int(request.query_params.get("page", 1))
        limit = int(request.query_params.get("limit", default_limit))
    except ValueError:
        raise InvalidInput("page and limit must be integers") from None
    return page, limit


def create_app(engine: SettlementEngine | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Mediaforge internal API")
    owns_engine = engine is None
    if engine is None:
        sessionmaker = create_sessionmaker()
        engine = SettlementEngine(
            sessionmaker,
            build_adapters(settings),
            ResultArchiver(sessionmaker, settings),
            settings,
        )
    app.state.engine = engine
    app.state.sweep_task = None
    tokens = settings.api_token_list()

    @app.on_event("startup")
    async def startup() -> None:
        if settings.api_sweep_enabled:
            runner = SweepRunner(app.state.engine, settings)
            app.state.sweep_task = asyncio.create_task(runner.watch())

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.sweep_task
        if task:
            task.cancel()
        if owns_engine:
            await close_adapters(engine.adapters)
            if engine.archiver:
                await engine.archiver.close()

    @app.middleware("http")
    async def require_token(request: Request, call_next):
        if request.url.path.startswith("/api/"):
            received = request.headers.get("x-internal-token", "")
            if not received or not any(hmac.compare_digest(received, token) for token in tokens):
                return JSONResponse({"error": "unauthorized"}, status_code=401)
        return await call_next(request)

    @app.exception_handler(MediaforgeError)
    async def handle_mediaforge_error(request: Request, exc: MediaforgeError):
        return _error_response(exc)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/api/costs")
    async def api_costs():
        return {
            "costs": cost_table(),
            "models": [
                {
                    "key": spec.key,
                    "provider": spec.provider,
                    "display_name": spec.display_name,
                    "kinds": [kind.value for kind in spec.kinds],
                    "min_duration": spec.min_duration,
                    "max_duration": spec.max_duration,
                }
                for spec in list_models()
            ],
        }

    @app.post("/api/users/{user_id}/generations")
    async def api_start_generation(user_id: int, request: Request):
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidInput("Request body must be JSON") from None
        if not isinstance(payload, dict):
            raise InvalidInput("Request body must be a JSON object")
        kind = payload.get("kind")
        if not kind:
            raise InvalidInput("kind is required")
        inputs = payload.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise InvalidInput("inputs must be an object")
        duration = payload.get("duration_seconds")
        if duration is not None and not isinstance(duration, (int, float)):
            raise InvalidInput("duration_seconds must be a number")
        generation = await app.state.engine.start(
            user_id,
            kind,
            inputs,
            duration_hint=duration,
            context_ref=payload.get("context_ref"),
        )
        return JSONResponse(generation_payload(generation), status_code=201)

    @app.get("/api/generations/{generation_id}")
    async def api_get_generation(generation_id: int, request: Request):
        user_id = request.query_params.get("user_id")
        if user_id is not None and not user_id.isdigit():
            raise InvalidInput("user_id must be an integer")
        generation = await app.state.engine.get_generation(
            generation_id,
            user_id=int(user_id) if user_id is not None else None,
        )
        return generation_payload(generation)

    @app.post("/api/users/{user_id}/generations/reconcile")
    async def api_reconcile(user_id: int):
        outcomes = await app.state.engine.reconcile_all_for_user(user_id)
        return {
            "changed": sum(1 for outcome in outcomes if outcome.changed),
            "generations": [generation_payload(outcome.generation) for outcome in outcomes],
        }

    @app.delete("/api/users/{user_id}/generations")
    async def api_clear_queue(user_id: int):
        result = await app.state.engine.clear_queue(user_id)
        return {
            "cancelled": result.cancelled,
            "completed": result.completed,
            "failed": result.failed,
            "cleared_completed": result.cleared_completed,
            "refunded_credits": result.refunded_credits,
            "generation_ids": result.generation_ids,
        }

    @app.get("/api/users/{user_id}/balance")
    async def api_balance(user_id: int):
        balance = await app.state.engine.get_balance(user_id)
        return {"user_id": user_id, "balance": balance}

    @app.get("/api/users/{user_id}/generations")
    async def api_history(user_id: int, request: Request):
        page, limit = _page_args(request, 20)
        result = await app.state.engine.get_history(user_id, page, limit)
        return {
            "items": [generation_payload(item) for item in result.items],
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "has_more": result.has_more,
        }

    @app.get("/api/users/{user_id}/ledger")
    async def api_ledger(user_id: int, request: Request):
        page, limit = _page_args(request, 50)
        result = await app.state.engine.get_ledger(user_id, page, limit)
        return {
            "items": [ledger_payload(item) for item in result.items],
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "has_more": result.has_more,
        }

    return app
