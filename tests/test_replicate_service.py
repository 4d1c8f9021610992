import pytest

from errors import UpstreamRateLimited, UpstreamSubmissionFailed
from schemas import GenerationMode, TryOnRequest
from services.replicate_service import (
    IDM_VTON,
    NANO_BANANA,
    NANO_BANANA_PRO,
    ModelGateway,
    is_rate_limited,
    resolve_model,
    retry_after_seconds,
    to_data_uri,
)
from tests.conftest import RateLimitError, no_sleep

PERSON = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAAB"
CLOTH = "https://cdn.example.com/garments/dress.jpg"


def make_request(**overrides):
    data = {"personImage": PERSON, "clothImage": CLOTH, "type": "long_dress"}
    data.update(overrides)
    return TryOnRequest(**data)


class TestHelpers:
    def test_bare_base64_gets_a_data_uri_prefix(self):
        assert to_data_uri(PERSON) == f"data:image/png;base64,{PERSON}"

    def test_urls_and_data_uris_pass_through(self):
        assert to_data_uri(CLOTH) == CLOTH
        assert to_data_uri("data:image/jpeg;base64,abc") == "data:image/jpeg;base64,abc"

    def test_model_table(self):
        assert resolve_model(GenerationMode.STANDARD) == NANO_BANANA
        assert resolve_model(GenerationMode.PLUS, True) == NANO_BANANA_PRO
        assert resolve_model(GenerationMode.BRONZE) == IDM_VTON

    def test_rate_limit_detection(self):
        assert is_rate_limited(RateLimitError())
        assert is_rate_limited(Exception('ReplicateError Details: status: 429 detail: {"retry_after": 3}'))
        assert not is_rate_limited(Exception("status: 422 invalid input"))

    def test_429_inside_other_text_is_not_a_rate_limit(self):
        assert not is_rate_limited(Exception("status: 422 image is 1429 pixels wide"))
        assert not is_rate_limited(Exception("prediction abc429 failed"))
        assert is_rate_limited(Exception('Request was throttled {"retry_after": 2}'))

    def test_retry_after_hint(self):
        assert retry_after_seconds(RateLimitError(retry_after=4)) == 4.0
        assert retry_after_seconds(Exception('throttled {"retry_after":1}')) == 1.0
        assert retry_after_seconds(Exception("throttled")) is None


class TestSubmit:
    @pytest.mark.asyncio
    async def test_standard_submission(self, gateway, fake_replicate):
        job = await gateway.submit(make_request(), "A red silk dress")

        assert job.prediction_ids == ("pred1",)
        created = fake_replicate.predictions.created[0]
        assert created.version == f"latest-{NANO_BANANA}"
        assert created.input["image_input"] == [f"data:image/png;base64,{PERSON}", CLOTH]
        assert "A red silk dress. The garment is a long dress (full length)" in created.input["prompt"]
        assert created.input["output_format"] == "jpg"

    @pytest.mark.asyncio
    async def test_prompt_modifiers(self, gateway, fake_replicate):
        request = make_request(isMakeoverMode=True, makeupStyle="soft glam", lipstickColor="nude")
        await gateway.submit(request, "A red silk dress")

        prompt = fake_replicate.predictions.created[0].input["prompt"]
        assert "complete makeover" in prompt
        assert "soft glam makeup" in prompt
        assert "nude lipstick" in prompt

    @pytest.mark.asyncio
    async def test_plus_mode_submits_three_views(self, gateway, fake_replicate):
        job = await gateway.submit(make_request(mode="Plus"), "A red silk dress")

        assert len(job.prediction_ids) == 3
        assert job.to_wire() == "pred1|pred2|pred3"
        prompts = [p.input["prompt"] for p in fake_replicate.predictions.created]
        assert prompts[0].startswith("Upper body shot")
        assert prompts[1].startswith("Side profile view")
        assert prompts[2].startswith("Full body, head-to-toe")
        assert all(p.input["resolution"] == "2K" for p in fake_replicate.predictions.created)

    @pytest.mark.asyncio
    async def test_plus_mode_partial_failure_cancels_started_views(self, gateway, fake_replicate):
        fake_replicate.predictions.fail_next(Exception("status: 422 invalid image"))

        with pytest.raises(UpstreamSubmissionFailed):
            await gateway.submit(make_request(mode="plus"), "A dress")

        started = [p.id for p in fake_replicate.predictions.created]
        assert len(started) == 2
        assert sorted(fake_replicate.predictions.canceled) == sorted(started)

    @pytest.mark.asyncio
    async def test_bronze_mode_uses_pinned_idm_vton(self, gateway, fake_replicate):
        await gateway.submit(make_request(mode="bronze", type="pants"), "Blue jeans")

        created = fake_replicate.predictions.created[0]
        assert created.version == IDM_VTON.split(":", 1)[1]
        assert created.input["category"] == "lower_body"
        assert created.input["garm_img"] == CLOTH
        assert fake_replicate.models.lookups == []


class TestRetry:
    @pytest.mark.asyncio
    async def test_two_rate_limits_then_success_yields_one_job(self, gateway, fake_replicate, sleeps):
        fake_replicate.predictions.fail_next(RateLimitError(), RateLimitError(retry_after=1))

        job = await gateway.submit(make_request(), "A dress")

        assert job.prediction_ids == ("pred1",)
        assert len(fake_replicate.predictions.created) == 1
        assert sleeps == [2.0, 1.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_after_three_attempts(self, gateway, fake_replicate, sleeps):
        fake_replicate.predictions.fail_next(RateLimitError(), RateLimitError(), RateLimitError())

        with pytest.raises(UpstreamRateLimited):
            await gateway.submit(make_request(), "A dress")

        assert fake_replicate.predictions.created == []
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_error_text_mentioning_429_is_not_retried(self, gateway, fake_replicate, sleeps):
        fake_replicate.predictions.fail_next(Exception("status: 413 payload of 4290 KB too large"))

        with pytest.raises(UpstreamSubmissionFailed) as excinfo:
            await gateway.submit(make_request(), "A dress")

        assert not isinstance(excinfo.value, UpstreamRateLimited)
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, gateway, fake_replicate, sleeps):
        fake_replicate.predictions.fail_next(Exception("status: 500 internal error"), RateLimitError())

        with pytest.raises(UpstreamSubmissionFailed) as excinfo:
            await gateway.submit(make_request(), "A dress")

        assert not isinstance(excinfo.value, UpstreamRateLimited)
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_custom_attempt_count(self, fake_replicate, sleeps):
        gateway = ModelGateway(fake_replicate, max_attempts=1, sleep=no_sleep)
        fake_replicate.predictions.fail_next(RateLimitError())

        with pytest.raises(UpstreamRateLimited):
            await gateway.submit(make_request(), "A dress")
        assert sleeps == []


class TestVideo:
    @pytest.mark.asyncio
    async def test_video_submission(self, gateway, fake_replicate):
        job = await gateway.submit_video(PERSON, "Turn around slowly")

        created = fake_replicate.predictions.created[0]
        assert job.prediction_ids == (created.id,)
        assert created.input["image"].startswith("data:image/png;base64,")
        assert created.input["duration"] == 8
