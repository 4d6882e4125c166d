import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app import messages
from app.config import settings
from app.errors import ServiceError, StoreUnavailableError, ValidationError
from app.logging_utils import RequestLoggingMiddleware, log_webhook_event, setup_logging
from app.metrics import get_metrics, get_metrics_content_type, record_conversation_turn, record_webhook_outcome
from app.oracle_sync import parse_webhook_event
from app.schemas import (
    AuthVerifyRequest,
    AuthVerifyResponse,
    ConnectBankResponse,
    DeployTokenRequest,
    DeployTokenResponse,
    ErrorResponse,
    HealthResponse,
    WebhookAck,
    WhatsAppRequest,
    WhatsAppResponse,
)
from app.services import Services, build_services, get_services
from app.storage import check_db_health, init_db
from app.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build services, start balance polling
    - Shutdown: stop balance polling
    """
    init_db()
    services = build_services(settings)
    app.state.services = services

    polling_task = None
    if services.aggregator.configured:
        polling_task = asyncio.create_task(services.sync_worker.run_polling())
    else:
        logger.warning("Pluggy not configured, balance polling disabled")

    yield

    if polling_task is not None:
        polling_task.cancel()
        try:
            await polling_task
        except asyncio.CancelledError:
            pass
        logger.info("Balance polling stopped")


app = FastAPI(
    title="Bank Token API",
    description="Bank-backed community token: oracle sync, token deployment and conversational wallet",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    502: {"model": ErrorResponse, "description": "Collaborator returned unusable data"},
    503: {"model": ErrorResponse, "description": "Collaborator not configured or unavailable"},
}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.message)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health(services: Services = Depends(get_services)) -> HealthResponse:
    """System overview: which collaborators are configured and reachable."""
    return HealthResponse(
        status="healthy",
        services={
            "database": await run_in_threadpool(check_db_health),
            "sessions": await run_in_threadpool(services.session_store.ping),
            "whatsapp": services.messenger.configured,
            "pluggy": services.aggregator.configured,
            "oracle": services.oracle is not None,
        },
    )


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The session store answers

    Otherwise returns 503 (Service Unavailable).
    """
    if not await run_in_threadpool(check_db_health):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if not await run_in_threadpool(services.session_store.ping):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Session store not reachable"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Token Deployment Route
# =============================================================================

@app.post("/api/deploy-token", response_model=DeployTokenResponse, responses=ERROR_RESPONSES)
async def deploy_token(
    body: DeployTokenRequest,
    services: Services = Depends(get_services),
) -> DeployTokenResponse:
    """
    Deploy a community token through the TokenFactory.

    All six fields are required and the four role fields must be ledger
    addresses. Without on-chain deployment enabled the result is synthetic
    and reported with mode="synthetic".
    """
    result = await run_in_threadpool(services.deployments.deploy_token, body.model_dump())
    return DeployTokenResponse(
        proxy=result.proxy_address,
        implementation=result.implementation_address,
        txHash=result.tx_hash,
        gasUsed=result.gas_used,
        mode=result.mode,
    )


# =============================================================================
# Bank Connection Routes
# =============================================================================

@app.post("/api/connect-bank/{tokenAddress}", response_model=ConnectBankResponse, responses=ERROR_RESPONSES)
async def connect_bank(
    tokenAddress: str,
    services: Services = Depends(get_services),
) -> ConnectBankResponse:
    """Start the aggregator connect flow that links a bank account to a token."""
    session = await run_in_threadpool(services.registry.initiate_connection, tokenAddress)
    return ConnectBankResponse(connectUrl=session.connect_url, expiresAt=session.expires_at)


@app.post(
    "/api/webhooks/pluggy",
    response_model=WebhookAck,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        **ERROR_RESPONSES,
    },
)
async def pluggy_webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    services: Services = Depends(get_services),
):
    """
    Receive bank aggregator events.

    - When PLUGGY_WEBHOOK_SECRET is set, X-Signature must be the hex
      HMAC-SHA256 of the raw body
    - CONNECTION_SUCCESS links the bank account to its token on the oracle
    - ACCOUNTS_UPDATED pushes the latest balance to the oracle
    - Other event types are acknowledged and ignored
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    secret = settings.PLUGGY_WEBHOOK_SECRET
    if secret and (not x_signature or not verify_hmac_signature(raw_body, x_signature, secret)):
        logger.error("Invalid or missing X-Signature on aggregator webhook")
        record_webhook_outcome("unverified", "invalid_signature")
        log_webhook_event(request, result="invalid_signature")
        return error_response(status.HTTP_401_UNAUTHORIZED, "invalid signature")

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("invalid", "validation_error")
        log_webhook_event(request, result="validation_error")
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    try:
        event = parse_webhook_event(payload)
    except ValidationError as e:
        logger.error(f"Rejected webhook: {e.message}")
        record_webhook_outcome("invalid", "validation_error")
        log_webhook_event(request, result="validation_error")
        raise

    logger.info(f"Webhook received: {event.raw_type} for item {event.item_id}")
    try:
        result = await run_in_threadpool(services.sync_worker.handle_webhook, event)
    except ServiceError:
        record_webhook_outcome(event.type.value, "error")
        log_webhook_event(request, event_type=event.raw_type, item_id=event.item_id, result="error")
        raise

    record_webhook_outcome(event.type.value, result)
    log_webhook_event(request, event_type=event.raw_type, item_id=event.item_id, result=result)
    return WebhookAck(ok=True)


# =============================================================================
# Conversational Channel Routes
# =============================================================================

@app.post("/whatsapp", response_model=WhatsAppResponse, responses={400: {"model": ErrorResponse}})
async def whatsapp(
    body: WhatsAppRequest,
    services: Services = Depends(get_services),
):
    """
    Handle one inbound text from the WhatsApp/USSD gateway.

    The reply always has the {sessionEnd, message} shape; internal failures
    end the session with a generic system error text. An empty text is
    valid (the first dial of a USSD session); an absent one is not.
    """
    if not body.sessionId or not body.phoneNumber or body.text is None:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing required fields: sessionId, phoneNumber, text")

    try:
        reply = await run_in_threadpool(
            services.conversation.handle,
            body.sessionId,
            body.phoneNumber,
            body.text,
        )
    except StoreUnavailableError as e:
        logger.error(f"Session store unavailable for session {body.sessionId}: {e}")
        record_conversation_turn("UNKNOWN", "store_unavailable")
        return WhatsAppResponse(sessionEnd=True, message=messages.SYSTEM_ERROR)
    except Exception:
        logger.exception(f"Conversation failed for session {body.sessionId}")
        record_conversation_turn("UNKNOWN", "error")
        return WhatsAppResponse(sessionEnd=True, message=messages.SYSTEM_ERROR)

    return WhatsAppResponse(sessionEnd=reply.session_end, message=reply.message)


@app.post(
    "/api/auth/verify",
    response_model=AuthVerifyResponse,
    responses={401: {"model": ErrorResponse, "description": "Authentication failed"}},
)
async def auth_verify(
    body: AuthVerifyRequest,
    services: Services = Depends(get_services),
):
    """Consume a verification token and return the phone's wallet."""
    if not body.phoneNumber or not body.token:
        return error_response(status.HTTP_401_UNAUTHORIZED, "Authentication failed")

    try:
        wallet = await run_in_threadpool(services.auth.verify, body.phoneNumber, body.token)
    except ValidationError as e:
        logger.warning(f"Auth verification rejected: {e.message}")
        return error_response(status.HTTP_401_UNAUTHORIZED, "Authentication failed")

    return AuthVerifyResponse(userId=wallet.user_id, address=wallet.address)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total / request_latency_seconds
    - aggregator_webhook_total, oracle_sync_total
    - conversation_turns_total, token_deployments_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
