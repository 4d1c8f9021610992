"""Generation jobs: composite ids, status mapping and result aggregation"""
import re
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from errors import BadRequest, JobNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

JOB_ID_DELIMITER = "|"
VIEW_NAMES = ("front", "side", "full")

# ReplicateError renders as "... status: 404 ..."
_STATUS_RE = re.compile(r"\bstatus\b\W{0,3}(\d{3})\b")


class JobStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def status_from_upstream(status: Optional[str]) -> JobStatus:
    """The only place Replicate status strings are interpreted."""
    if status == "succeeded":
        return JobStatus.SUCCEEDED
    if status in ("failed", "canceled"):
        return JobStatus.FAILED
    return JobStatus.PROCESSING


def upstream_status(error: Exception) -> Optional[int]:
    """HTTP status behind a Replicate client error, if it carries one."""
    for source in (error, getattr(error, "response", None)):
        for attr in ("status", "status_code"):
            value = getattr(source, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    match = _STATUS_RE.search(str(error))
    return int(match.group(1)) if match else None


def _escape(prediction_id: str) -> str:
    return prediction_id.replace("%", "%25").replace(JOB_ID_DELIMITER, "%7C")


def _unescape(part: str) -> str:
    return part.replace("%7C", JOB_ID_DELIMITER).replace("%25", "%")


@dataclass(frozen=True)
class GenerationJob:
    """One logical try-on request backed by one or more Replicate predictions.

    ``prediction_ids`` is ordered: in a multi-view job index 0 is the front
    view, 1 the side view and 2 the full-body view.
    """

    prediction_ids: Tuple[str, ...]

    def __post_init__(self):
        if not self.prediction_ids or any(not pid for pid in self.prediction_ids):
            raise ValueError("A generation job needs at least one non-empty prediction id")

    @property
    def is_composite(self) -> bool:
        return len(self.prediction_ids) > 1

    def to_wire(self) -> str:
        return JOB_ID_DELIMITER.join(_escape(pid) for pid in self.prediction_ids)

    @classmethod
    def from_wire(cls, job_id: str) -> "GenerationJob":
        parts = [_unescape(part) for part in job_id.strip().split(JOB_ID_DELIMITER)]
        try:
            return cls(tuple(parts))
        except ValueError:
            raise BadRequest(f"Malformed job id: {job_id!r}")


# Upstream output comes in three shapes; each is normalised to one URL.

@dataclass(frozen=True)
class UrlOutput:
    url: str


@dataclass(frozen=True)
class ListOutput:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class FileOutput:
    source: Any


def classify_output(output: Any):
    if isinstance(output, str):
        return UrlOutput(output)
    if isinstance(output, (list, tuple)):
        return ListOutput(tuple(output))
    if output is None:
        return None
    return FileOutput(output)


def normalize_output(output: Any) -> str:
    shape = classify_output(output)
    if isinstance(shape, UrlOutput):
        return shape.url
    if isinstance(shape, ListOutput):
        return normalize_output(shape.items[0]) if shape.items else ""
    if isinstance(shape, FileOutput):
        source = shape.source
        url = source.get("url") if isinstance(source, dict) else getattr(source, "url", None)
        if callable(url):
            url = url()
        return str(url) if url else ""
    return ""


@dataclass
class JobResult:
    status: JobStatus
    output: Optional[Dict[str, str]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status.value}
        if self.status is JobStatus.SUCCEEDED and self.output is not None:
            body["output"] = self.output
        if self.status is JobStatus.FAILED:
            body["error"] = self.error or "Generation failed"
        return body


@dataclass
class PredictionState:
    status: JobStatus
    output: Any = None
    error: Optional[str] = None


def aggregate(states: List[PredictionState], analysis: str = "Generated successfully") -> JobResult:
    """Reduce per-prediction states into one result.

    Any failure wins, then all-succeeded, otherwise still processing.
    """
    for state in states:
        if state.status is JobStatus.FAILED:
            return JobResult(JobStatus.FAILED, error=state.error or "One of the generations failed")

    if all(state.status is JobStatus.SUCCEEDED for state in states):
        urls = [normalize_output(state.output) for state in states]
        if len(urls) == 1:
            output = {view: urls[0] for view in VIEW_NAMES}
        else:
            output = {view: urls[i] if i < len(urls) else urls[0] for i, view in enumerate(VIEW_NAMES)}
        output["analysis"] = analysis
        return JobResult(JobStatus.SUCCEEDED, output=output)

    return JobResult(JobStatus.PROCESSING)


class JobTracker:
    """Reads prediction state from Replicate; never mutates anything."""

    def __init__(self, replicate_client):
        self.replicate = replicate_client

    async def _fetch(self, prediction_id: str) -> PredictionState:
        try:
            prediction = await self.replicate.predictions.async_get(prediction_id)
        except Exception as e:
            if upstream_status(e) == 404:
                logger.warning(f"Prediction {prediction_id} not found")
                raise JobNotFound(f"Unknown job: {prediction_id}")
            logger.error(f"Failed to fetch prediction {prediction_id}: {str(e)}")
            raise UpstreamUnavailable(f"Could not fetch prediction status: {str(e)}")
        return PredictionState(
            status=status_from_upstream(getattr(prediction, "status", None)),
            output=getattr(prediction, "output", None),
            error=getattr(prediction, "error", None),
        )

    async def poll(self, job_id: str) -> JobResult:
        job = GenerationJob.from_wire(job_id)
        states = await asyncio.gather(*(self._fetch(pid) for pid in job.prediction_ids))
        analysis = "Generated successfully (Plus Mode)" if job.is_composite else "Generated successfully"
        result = aggregate(list(states), analysis=analysis)
        logger.info(f"Job {job.to_wire()} status: {result.status.value}")
        return result
