"""Virtual try-on orchestration: credit check, submission, then charge"""
import logging
from dataclasses import dataclass

from errors import AppError, BadRequest, InsufficientCredits
from schemas import VIDEO_COST, TryOnRequest, VideoRequest
from services.credit_service import CreditLedger
from services.garment_description_service import generate_garment_description, resolve_description
from services.job_service import GenerationJob, JobStatus
from services.replicate_service import VIDEO_MODEL, ModelGateway, resolve_model

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    job: GenerationJob
    cost: float
    balance: float
    model: str

    def to_dict(self) -> dict:
        return {
            "id": self.job.to_wire(),
            "status": JobStatus.STARTING.value,
            "cost": self.cost,
            "model": self.model,
            "credits": self.balance,
        }


async def _ensure_affordable(ledger: CreditLedger, user_id: str, cost: float) -> float:
    balance = await ledger.get_balance(user_id)
    logger.info(f"User {user_id} credits: {balance}, cost: {cost}")
    if balance < cost:
        raise InsufficientCredits(cost, balance)
    return balance


async def _charge(ledger: CreditLedger, gateway: ModelGateway, user_id: str, cost: float, job: GenerationJob) -> float:
    """Debit after submission; if that fails the queued predictions are canceled."""
    try:
        return await ledger.try_debit(user_id, cost)
    except AppError:
        logger.error(f"Charging user {user_id} failed after submitting {job.to_wire()}; canceling")
        await gateway.cancel(job)
        raise


async def submit_tryon(
    user_id: str,
    request: TryOnRequest,
    ledger: CreditLedger,
    gateway: ModelGateway,
    openai_client=None,
) -> Submission:
    cost = request.cost
    await _ensure_affordable(ledger, user_id, cost)

    if not request.person_image or not request.cloth_image:
        raise BadRequest("Both person and cloth images are required.")

    description = resolve_description(request.garment_description)
    if description is None:
        description = await generate_garment_description(openai_client, request.cloth_image)

    # Submission errors propagate before any credit is spent
    job = await gateway.submit(request, description)
    balance = await _charge(ledger, gateway, user_id, cost, job)

    return Submission(job=job, cost=cost, balance=balance, model=resolve_model(request.mode, request.alternate_engine))


async def submit_video(user_id: str, request: VideoRequest, ledger: CreditLedger, gateway: ModelGateway) -> Submission:
    cost = VIDEO_COST
    await _ensure_affordable(ledger, user_id, cost)

    if not request.image:
        raise BadRequest("An image is required for video generation.")

    model_ref = request.model or VIDEO_MODEL
    if model_ref != VIDEO_MODEL:
        raise BadRequest(f"Unsupported video model: {model_ref}")
    prompt = resolve_description(request.description) or "The person turns slowly to show off the outfit."
    job = await gateway.submit_video(request.image, prompt, model_ref)
    balance = await _charge(ledger, gateway, user_id, cost, job)

    return Submission(job=job, cost=cost, balance=balance, model=model_ref)
