"""HTTP surface for payment sessions and the background expiry sweeper."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ilppay.common.config import settings
from ilppay.common.errors import PaymentFlowError, ValidationError
from ilppay.common.logging import configure_logging, logger, trace_id_ctx
from ilppay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from ilppay.common.tracing import instrument_app, setup_tracing
from ilppay.services.orchestrator.schemas import (
    CancelledSession,
    CompletedPayment,
    CompletePaymentRequest,
    ErrorResponse,
    InitiatedPayment,
    InitiatePaymentRequest,
    SessionStats,
    SessionStatusView,
)
from ilppay.services.orchestrator.service import PaymentOrchestrator, build_orchestrator
from ilppay.services.orchestrator.sweeper import ExpirySweeper

configure_logging()
setup_tracing(settings.service_name)

# Kinds whose message is produced locally and safe to show as-is.
_LOCAL_MESSAGE_KINDS = {"ValidationError", "NotFoundError", "InvalidStateError"}
_PUBLIC_MESSAGES = {
    "WalletLookupError": "Could not resolve the wallet address",
    "TimeoutError": "Timed out contacting the payment network",
    "GrantError": "The payment authorization was not granted",
    "GatewayError": "The payment network rejected the request",
    "InternalConfigError": "Server configuration error",
}


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def error_response(exc: PaymentFlowError) -> JSONResponse:
    """Map a flow error to the public envelope; raw detail only in development."""

    if exc.kind in _LOCAL_MESSAGE_KINDS:
        message = exc.message
    else:
        message = _PUBLIC_MESSAGES.get(exc.kind, "Internal server error")
    details = None
    if isinstance(exc, ValidationError):
        details = exc.errors
    elif settings.diagnostics_enabled:
        details = [exc.message]
        if exc.__cause__ is not None:
            details.append(repr(exc.__cause__))
    body = ErrorResponse(error=exc.kind, message=message, details=details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


router = APIRouter(prefix="/api")


@router.post("/initiate-payment", response_model=InitiatedPayment)
async def initiate_payment(
    req: InitiatePaymentRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Create the incoming payment, quote and pending outgoing grant for a new session."""

    return await orchestrator.initiate(req.receiving_wallet, req.amount)


@router.post("/complete-payment", response_model=CompletedPayment)
async def complete_payment(
    req: CompletePaymentRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Continue the authorized grant and create the outgoing payment."""

    return await orchestrator.complete(req.session_id)


@router.get("/session/{session_id}", response_model=SessionStatusView)
async def get_session(session_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_status(session_id)


@router.delete("/session/{session_id}", response_model=CancelledSession)
async def cancel_session(session_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.cancel(session_id)


@router.get("/health")
async def health(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Liveness probe with the number of live sessions."""

    stats = await orchestrator.stats()
    return {
        "status": "OK",
        "timestamp": stats.timestamp.isoformat(),
        "sessionsActive": stats.total_sessions,
        "uptime": stats.uptime_seconds,
    }


@router.get("/stats", response_model=SessionStats)
async def session_stats(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.stats()


@router.get("/config")
def public_config():
    """Non-secret configuration for the front-end."""

    return {
        "success": True,
        "config": {
            "walletAddress": settings.wallet_address_url,
            "environment": settings.environment,
            "version": settings.app_version,
        },
    }


def create_app(orchestrator: PaymentOrchestrator | None = None, run_sweeper: bool = True) -> FastAPI:
    """Build the API. Without an orchestrator one is wired from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Own the orchestrator resources and run the sweeper with the app lifecycle."""

        logger.info("startup_config=%s", settings.redacted())
        current = orchestrator or build_orchestrator(settings)
        app.state.orchestrator = current
        sweeper_task = None
        if run_sweeper:
            sweeper = ExpirySweeper(
                current.store,
                ttl=current.session_ttl,
                interval_seconds=settings.sweep_interval_seconds,
                clock=current.clock,
                service_name=settings.service_name,
            )
            sweeper_task = asyncio.create_task(sweeper.run_forever())
        yield
        if sweeper_task is not None:
            sweeper_task.cancel()
        if orchestrator is None:
            await current.gateway.close()
            await current.store.close()

    app = FastAPI(title="ILP Pay Sessions", lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator
    instrument_app(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Correlation-Id"],
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind a trace id for logs."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaymentFlowError)
    async def payment_flow_error_handler(_: Request, exc: PaymentFlowError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
            errors.append(f"{field}: {err.get('msg', 'invalid value')}")
        return error_response(ValidationError(errors))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(_: Request, exc: Exception):
        logger.exception("unhandled_error: %s", exc)
        body = ErrorResponse(
            error="InternalError",
            message="Internal server error",
            details=[repr(exc)] if settings.diagnostics_enabled else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump(by_alias=True, exclude_none=True))

    app.include_router(router)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
