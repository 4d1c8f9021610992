from contextlib import asynccontextmanager
from typing import Optional
import math
import logging

import httpx
import replicate
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from openai import AsyncOpenAI

from config import (
    CLERK_API_URL,
    CLERK_AUTHORIZED_PARTIES,
    CLERK_SECRET_KEY,
    CREDITS_PER_USD,
    FASTSPRING_WEBHOOK_SECRET,
    OPENAI_API_KEY,
    PADDLE_WEBHOOK_SECRET_KEY,
    PAYHIP_WEBHOOK_SECRET,
    PAYPAL_API_BASE,
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PORT,
    REPLICATE_API_TOKEN,
)
from dependencies import (
    get_current_user_id,
    get_gateway,
    get_ledger,
    get_openai,
    get_reconciler,
    get_tracker,
)
from errors import AppError, BadRequest
from schemas import AddPointsRequest, CreditsResponse, TryOnRequest, VideoRequest
from services.clerk_service import ClerkClient
from services.credit_service import CreditLedger
from services.job_service import JobTracker
from services.payment_service import FASTSPRING, PADDLE, PAYHIP, WEBHOOK_PROVIDERS, PaymentReconciler
from services.paypal_service import PayPalClient
from services.replicate_service import ModelGateway
from services.tryon_service import submit_tryon, submit_video

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared clients once; handlers receive them through dependencies."""
    if not CLERK_SECRET_KEY:
        logger.error("CLERK_SECRET_KEY is missing! Authentication and credits will fail.")
    if not REPLICATE_API_TOKEN:
        logger.error("REPLICATE_API_TOKEN is missing! Generation requests will fail.")
    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not configured. Using default garment descriptions.")

    http = httpx.AsyncClient(timeout=30.0)
    replicate_client = replicate.Client(api_token=REPLICATE_API_TOKEN)
    clerk = ClerkClient(http, CLERK_SECRET_KEY, CLERK_API_URL, CLERK_AUTHORIZED_PARTIES)
    ledger = CreditLedger(clerk)

    app.state.clerk = clerk
    app.state.ledger = ledger
    app.state.gateway = ModelGateway(replicate_client)
    app.state.tracker = JobTracker(replicate_client)
    app.state.openai = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None
    app.state.reconciler = PaymentReconciler(
        ledger,
        clerk,
        secrets={
            PAYHIP: PAYHIP_WEBHOOK_SECRET,
            FASTSPRING: FASTSPRING_WEBHOOK_SECRET,
            PADDLE: PADDLE_WEBHOOK_SECRET_KEY,
        },
        credits_per_unit=CREDITS_PER_USD,
        paypal=PayPalClient(http, PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET, PAYPAL_API_BASE),
    )
    try:
        yield
    finally:
        await http.aclose()


class PreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware answering successful preflights with 204 No Content."""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


app = FastAPI(title="Fitroom API", lifespan=lifespan)

app.add_middleware(
    PreflightCORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.get("/")
@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.post("/api/generate", status_code=202)
async def generate(
    payload: TryOnRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
    gateway: ModelGateway = Depends(get_gateway),
    openai_client=Depends(get_openai),
):
    """Start a try-on generation and return the job id without waiting for it"""
    logger.info(f"User {user_id} is generating content ({payload.mode.value} mode, type={payload.garment_type})")
    submission = await submit_tryon(user_id, payload, ledger, gateway, openai_client)
    return JSONResponse(status_code=202, content=submission.to_dict())


@app.get("/api/generate")
async def generation_status(id: Optional[str] = None, tracker: JobTracker = Depends(get_tracker)):
    """Poll a job; composite ids from plus mode are aggregated into one status"""
    if not id:
        raise BadRequest("Missing id parameter")
    result = await tracker.poll(id)
    return result.to_dict()


@app.post("/api/video-generate", status_code=202)
async def video_generate(
    payload: VideoRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
    gateway: ModelGateway = Depends(get_gateway),
):
    logger.info(f"User {user_id} requests video generation")
    submission = await submit_video(user_id, payload, ledger, gateway)
    return JSONResponse(status_code=202, content=submission.to_dict())


@app.get("/api/user/credits", response_model=CreditsResponse)
async def user_credits(user_id: str = Depends(get_current_user_id), ledger: CreditLedger = Depends(get_ledger)):
    return {"credits": await ledger.get_balance(user_id)}


@app.post("/api/user/add-points")
async def add_points(
    payload: AddPointsRequest,
    user_id: str = Depends(get_current_user_id),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Credit a captured PayPal order after confirming it with PayPal"""
    if not payload.order_id:
        raise BadRequest("Missing orderID")

    result = await reconciler.confirm_paypal_order(user_id, payload.order_id, payload.amount)
    body = {"ok": True, "creditsAdded": result.added, "credits": result.credits}
    if result.already_processed:
        body["alreadyProcessed"] = True
    return body


@app.post("/api/webhooks/{provider}")
async def payment_webhook(provider: str, request: Request, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Payment provider callbacks; always 200 once the payload is verified and understood"""
    if provider not in WEBHOOK_PROVIDERS:
        return JSONResponse(status_code=404, content={"error": f"Unknown payment provider: {provider}"})

    # Signatures cover the exact bytes, so read them before any JSON parsing
    body = await request.body()
    result = await reconciler.handle_webhook(provider, body, request.headers)
    logger.info(f"{provider} webhook handled: {result.to_dict()}")
    return result.to_dict()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(math.ceil(retry_after))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "detail": jsonable_encoder(exc.errors())}
    )


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
