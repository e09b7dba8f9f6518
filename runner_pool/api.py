import logging

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from runner_pool.context import Context
from runner_pool.delegate import Delegate
from runner_pool.errors import InstanceNotFound, PoolUnknown, RunnerError
from runner_pool.metrics import metrics
from runner_pool.schemas import (
    DestroyRequest,
    ExecStepRequest,
    PoolOwnerResponse,
    SetupRequest,
    SetupResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()


def get_delegate(request: Request) -> Delegate:
    return request.app.state.delegate


def request_context(request: Request) -> Context:
    delegate: Delegate = request.app.state.delegate
    return delegate.manager.ctx.child()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/pool_owner", response_model=PoolOwnerResponse)
def pool_owner(
    pool: str = Query(min_length=1),
    stage_id: str | None = Query(default=None, alias="stageId"),
    delegate: Delegate = Depends(get_delegate),
    ctx: Context = Depends(request_context),
) -> PoolOwnerResponse:
    return PoolOwnerResponse(owner=delegate.pool_owner(ctx, pool, stage_id))


@router.post("/setup", response_model=SetupResponse)
def setup(
    body: SetupRequest,
    delegate: Delegate = Depends(get_delegate),
    ctx: Context = Depends(request_context),
) -> SetupResponse:
    return delegate.setup(ctx, body)


@router.post("/step")
def step(
    body: ExecStepRequest,
    delegate: Delegate = Depends(get_delegate),
    ctx: Context = Depends(request_context),
) -> dict:
    return delegate.step(ctx, body)


@router.post("/destroy")
def destroy(
    body: DestroyRequest,
    delegate: Delegate = Depends(get_delegate),
    ctx: Context = Depends(request_context),
) -> dict[str, bool]:
    delegate.destroy(ctx, body)
    return {"ok": True}


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid request"


def _bad_request(request: Request, message: str) -> PlainTextResponse:
    logger.warning("bad request path=%s error=%s", request.url.path, message)
    return PlainTextResponse(message, status_code=400)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    def validation_error(request: Request, exc: RequestValidationError) -> Response:
        return _bad_request(request, _validation_message(exc))

    @app.exception_handler(PoolUnknown)
    def pool_unknown(request: Request, exc: PoolUnknown) -> Response:
        return _bad_request(request, str(exc))

    @app.exception_handler(InstanceNotFound)
    def instance_not_found(request: Request, exc: InstanceNotFound) -> Response:
        return _bad_request(request, str(exc))

    @app.exception_handler(RunnerError)
    def runner_error(request: Request, exc: RunnerError) -> Response:
        metrics.inc("http_internal_errors_total")
        logger.error(
            "request failed path=%s error_type=%s error=%s",
            request.url.path,
            exc.__class__.__name__,
            exc,
        )
        return Response(status_code=500)

    @app.exception_handler(Exception)
    def unexpected_error(request: Request, exc: Exception) -> Response:
        metrics.inc("http_internal_errors_total")
        logger.exception("unexpected error path=%s: %s", request.url.path, exc)
        return Response(status_code=500)
