"""HTTP surface: token verification, gateway notifications, return page."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokengate import __version__
from tokengate.config import GateConfig
from tokengate.notifier import NullNotifier, PaymentNotifier, TelegramNotifier
from tokengate.origin import client_origin, is_public_origin, normalize_origin
from tokengate.reconciler import ReconcileReason, WebhookReconciler
from tokengate.store import LedgerStore, StoreError, TransientStoreError
from tokengate.stores import SqlStore
from tokengate.verification import VerificationService, VerifyOutcome

logger = logging.getLogger(__name__)


class VerifyRequest(BaseModel):
    token: str = Field(min_length=1)


class VerifyResponse(BaseModel):
    success: bool
    message: str
    identity: str | None = None
    remaining_credit: int | None = None


_OUTCOME_RESPONSES: dict[VerifyOutcome, tuple[int, str]] = {
    VerifyOutcome.OK: (200, "Verification succeeded"),
    VerifyOutcome.MALFORMED: (400, "Malformed token"),
    VerifyOutcome.CRYPTOGRAPHIC_FAILURE: (401, "Invalid token or origin mismatch"),
    VerifyOutcome.ORIGIN_MISMATCH: (401, "Invalid token or origin mismatch"),
    VerifyOutcome.NOT_FOUND: (401, "Invalid token or origin mismatch"),
    VerifyOutcome.INSUFFICIENT_CREDIT: (403, "No remaining credit"),
}

_NOTIFY_FAILURE_STATUS: dict[ReconcileReason, int] = {
    ReconcileReason.ORDER_NOT_FOUND: 404,
    ReconcileReason.APPLY_FAILED: 500,
}

RETURN_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Payment complete</title>
<style>
body { font-family: sans-serif; text-align: center; margin-top: 15vh; color: #222; }
.icon { font-size: 48px; }
</style>
</head>
<body>
<div class="icon">&#10004;</div>
<h1>Payment complete</h1>
<p>Thank you. Your purchase is applied automatically.</p>
<p>Return to the chat to see your account.</p>
</body>
</html>
"""


def _verify_response(status: int, body: VerifyResponse) -> JSONResponse:
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))


def create_app(
    config: GateConfig,
    store: LedgerStore,
    *,
    notifier: PaymentNotifier | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Build the FastAPI app around an already-constructed store."""
    verification = VerificationService(store, config)
    reconciler = WebhookReconciler(store, config, verification, notifier or NullNotifier())

    if lifespan is None:

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncIterator[None]:
            yield
            await reconciler.drain()

    app = FastAPI(title="tokengate", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.verification = verification
    app.state.reconciler = reconciler

    # -- error handlers -------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
        return _verify_response(400, VerifyResponse(success=False, message="Malformed request"))

    @app.exception_handler(StarletteHTTPException)
    async def _not_found(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": "Not found", "path": request.url.path},
            )
        return await http_exception_handler(request, exc)

    # -- routes ---------------------------------------------------------------

    @app.get("/")
    async def index() -> dict[str, str]:
        return {"service": "tokengate", "version": __version__, "status": "running"}

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/verify")
    async def verify(body: VerifyRequest, request: Request) -> JSONResponse:
        peer = request.client.host if request.client else None
        origin = client_origin(request.headers, peer)
        if origin is None or not is_public_origin(origin):
            logger.warning("Verification from non-public origin %r", origin)
            return _verify_response(
                400, VerifyResponse(success=False, message="Could not determine a public client address")
            )
        origin = normalize_origin(origin)

        try:
            result = await verification.verify(body.token, origin)
        except TransientStoreError:
            logger.error("Store unavailable during verification from %s", origin, exc_info=True)
            return _verify_response(503, VerifyResponse(success=False, message="Service temporarily unavailable"))
        except StoreError:
            logger.error("Store error during verification from %s", origin, exc_info=True)
            return _verify_response(500, VerifyResponse(success=False, message="Internal error"))

        status, message = _OUTCOME_RESPONSES[result.outcome]
        if result.outcome is VerifyOutcome.OK:
            body_out = VerifyResponse(
                success=True,
                message=message,
                identity=result.identity,
                remaining_credit=result.remaining_credit,
            )
        elif result.outcome is VerifyOutcome.INSUFFICIENT_CREDIT:
            body_out = VerifyResponse(
                success=False, message=message, identity=result.identity, remaining_credit=0
            )
        else:
            body_out = VerifyResponse(success=False, message=message)
        return _verify_response(status, body_out)

    @app.api_route("/notify", methods=["GET", "POST"], response_class=PlainTextResponse)
    async def notify(request: Request) -> PlainTextResponse:
        params = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({key: str(value) for key, value in form.items()})
        logger.info("Payment notification (%s) for gateway order %s", request.method, params.get("orderId"))

        try:
            result = await reconciler.reconcile(params)
        except StoreError:
            logger.error("Store error while reconciling %s", params.get("orderId"), exc_info=True)
            return PlainTextResponse("fail", status_code=500)

        if result.ack:
            return PlainTextResponse("success", status_code=200)
        return PlainTextResponse("fail", status_code=_NOTIFY_FAILURE_STATUS.get(result.reason, 400))

    @app.get("/return", response_class=HTMLResponse)
    async def payment_return() -> HTMLResponse:
        return HTMLResponse(RETURN_PAGE)

    return app


def create_app_from_config(config: GateConfig) -> FastAPI:
    """Wire a SQL store and Telegram notifier from configuration.

    Tables are created on startup; the engine and HTTP clients close on
    shutdown. Serve with any ASGI server, e.g. ``uvicorn``.
    """
    store = SqlStore.from_url(config.database_url, timeout_secs=config.store_timeout_secs)
    notifier = TelegramNotifier(config.bot_token) if config.bot_token else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.init()
        logger.info("tokengate %s listening on %s:%d", __version__, config.server_host, config.server_port)
        try:
            yield
        finally:
            await app.state.reconciler.drain()
            if notifier is not None:
                await notifier.close()
            await store.close()

    return create_app(config, store, notifier=notifier, lifespan=lifespan)
