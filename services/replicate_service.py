"""Submitting try-on and video predictions to Replicate"""
import re
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from errors import UpstreamRateLimited, UpstreamSubmissionFailed
from schemas import GenerationMode, TryOnRequest
from services.job_service import GenerationJob, upstream_status
from services.prompt_service import build_prompt, build_view_prompts, describe_garment, idm_vton_category

logger = logging.getLogger(__name__)

NANO_BANANA = "google/nano-banana"
NANO_BANANA_PRO = "google/nano-banana-pro"
IDM_VTON = "cuuupid/idm-vton:c871bb9b046f6d0a3d78549b8d1f7cf9bbf2909dd0b1e8c30ef38f7632920523"
VIDEO_MODEL = "bytedance/seedance-1.5-pro"

# (mode, alternate engine) -> model reference; "owner/name:version" is pinned
MODEL_TABLE: Dict[Tuple[GenerationMode, bool], str] = {
    (GenerationMode.STANDARD, False): NANO_BANANA,
    (GenerationMode.STANDARD, True): NANO_BANANA_PRO,
    (GenerationMode.PLUS, False): NANO_BANANA,
    (GenerationMode.PLUS, True): NANO_BANANA_PRO,
    (GenerationMode.BRONZE, False): IDM_VTON,
    (GenerationMode.BRONZE, True): IDM_VTON,
}

VIDEO_DURATION_SECONDS = 8
MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 2.0

_RETRY_AFTER_RE = re.compile(r'"?retry_after"?\s*[:=]\s*(\d+(?:\.\d+)?)')
_THROTTLED_RE = re.compile(r"throttl|rate.?limit|too many requests", re.IGNORECASE)


def to_data_uri(image: str) -> str:
    """Prefix bare base64 so Replicate accepts it; URLs and data URIs pass through."""
    if image.startswith(("http://", "https://", "data:")):
        return image
    return f"data:image/png;base64,{image}"


def resolve_model(mode: GenerationMode, alternate_engine: bool = False) -> str:
    return MODEL_TABLE[(mode, bool(alternate_engine))]


def is_rate_limited(error: Exception) -> bool:
    if upstream_status(error) == 429:
        return True
    return bool(_RETRY_AFTER_RE.search(str(error)) and _THROTTLED_RE.search(str(error)))


def retry_after_seconds(error: Exception) -> Optional[float]:
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _RETRY_AFTER_RE.search(str(error))
    if match:
        return float(match.group(1))
    return None


class ModelGateway:
    """Builds model inputs and submits predictions; never touches credits."""

    def __init__(
        self,
        replicate_client,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.replicate = replicate_client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    async def _with_retry(self, description: str, call: Callable[[], Awaitable[Any]]):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except Exception as e:
                if not is_rate_limited(e):
                    logger.error(f"Replicate {description} failed: {str(e)}")
                    raise UpstreamSubmissionFailed(f"Replicate error: {str(e)}")

                wait = retry_after_seconds(e)
                if attempt == self.max_attempts:
                    logger.error(f"Replicate {description} still rate limited after {attempt} attempts")
                    raise UpstreamRateLimited("Service busy. Please try again later.", retry_after=wait)

                wait = wait if wait is not None else self.backoff_seconds
                logger.warning(
                    f"Rate limited (429) on {description}. Retrying in {wait}s... "
                    f"(Attempt {attempt}/{self.max_attempts})"
                )
                await self.sleep(wait)

    async def resolve_version(self, model_ref: str) -> str:
        """Return the version id for a model reference, looking up the latest when unpinned."""
        if ":" in model_ref:
            return model_ref.split(":", 1)[1]

        model = await self._with_retry(
            f"lookup of {model_ref}", lambda: self.replicate.models.async_get(model_ref)
        )
        latest = getattr(model, "latest_version", None)
        version_id = getattr(latest, "id", None)
        if not version_id:
            raise UpstreamSubmissionFailed(f"Model version not available for {model_ref}")
        return version_id

    async def _create(self, version_id: str, model_input: Dict[str, Any]) -> str:
        prediction = await self._with_retry(
            "prediction create",
            lambda: self.replicate.predictions.async_create(version=version_id, input=model_input),
        )
        return prediction.id

    def _base_input(self, request: TryOnRequest, prompt: str) -> Dict[str, Any]:
        plus = request.mode is GenerationMode.PLUS
        return {
            "prompt": prompt,
            "image_input": [to_data_uri(request.person_image), to_data_uri(request.cloth_image)],
            "aspect_ratio": "match_input_image",
            "output_format": "png" if plus else "jpg",
            "resolution": "2K" if plus else "1K",
            "safety_filter_level": "block_only_high",
        }

    def _idm_vton_input(self, request: TryOnRequest, description: str) -> Dict[str, Any]:
        return {
            "human_img": to_data_uri(request.person_image),
            "garm_img": to_data_uri(request.cloth_image),
            "garment_des": describe_garment(description, request.garment),
            "category": idm_vton_category(request.garment),
            "crop": True,
            "steps": 30,
            "seed": 42,
        }

    async def submit(self, request: TryOnRequest, description: str) -> GenerationJob:
        model_ref = resolve_model(request.mode, request.alternate_engine)
        logger.info(f"Starting Replicate prediction ({model_ref}) in {request.mode.value} mode...")
        version_id = await self.resolve_version(model_ref)

        if request.mode is GenerationMode.BRONZE:
            prediction_id = await self._create(version_id, self._idm_vton_input(request, description))
            logger.info(f"Prediction created: {prediction_id}")
            return GenerationJob((prediction_id,))

        if request.mode is GenerationMode.PLUS:
            return await self._submit_views(request, description, version_id)

        prediction_id = await self._create(version_id, self._base_input(request, build_prompt(request, description)))
        logger.info(f"Prediction created: {prediction_id}")
        return GenerationJob((prediction_id,))

    async def _submit_views(self, request: TryOnRequest, description: str, version_id: str) -> GenerationJob:
        prompts = build_view_prompts(request, description)
        logger.info(f"Starting Plus Mode predictions ({len(prompts)} views)...")
        results = await asyncio.gather(
            *(self._create(version_id, self._base_input(request, text)) for text in prompts.values()),
            return_exceptions=True,
        )

        created: List[str] = [r for r in results if isinstance(r, str)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # Cancel the views that did start
            await self.cancel(created)
            raise errors[0]

        job = GenerationJob(tuple(created))
        logger.info(f"Plus Mode predictions created: {job.to_wire()}")
        return job

    async def submit_video(self, image: str, prompt: str, model_ref: str = VIDEO_MODEL) -> GenerationJob:
        logger.info(f"Starting video prediction ({model_ref})...")
        version_id = await self.resolve_version(model_ref)
        prediction_id = await self._create(
            version_id,
            {"prompt": prompt, "image": to_data_uri(image), "duration": VIDEO_DURATION_SECONDS},
        )
        logger.info(f"Video prediction created: {prediction_id}")
        return GenerationJob((prediction_id,))

    async def cancel(self, prediction_ids) -> None:
        """Best-effort cancellation; failures are logged, not raised."""
        if isinstance(prediction_ids, GenerationJob):
            prediction_ids = prediction_ids.prediction_ids
        for prediction_id in prediction_ids:
            try:
                await self.replicate.predictions.async_cancel(prediction_id)
                logger.info(f"Canceled prediction {prediction_id}")
            except Exception as e:
                logger.error(f"Failed to cancel prediction {prediction_id}: {str(e)}")
