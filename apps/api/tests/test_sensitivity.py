import json

import httpx
import pytest

from models.asset import MediaAsset
from services.errors import ClassificationError
from services.sensitivity import (
    CATEGORY_KEYS,
    FixedScoreClassifier,
    MockSensitivityClassifier,
    ModerationApiClassifier,
    SensitivityThresholds,
    evaluate,
    overall_score,
)


def _scores(**overrides):
    scores = {key: 10 for key in CATEGORY_KEYS}
    scores.update(overrides)
    return scores


def _asset(**fields):
    values = {
        "id": "asset-1",
        "user_id": "owner-1",
        "title": "clip",
        "original_filename": "clip.mp4",
        "source_path": "/tmp/clip.mp4",
        "mime_type": "video/mp4",
        "duration_seconds": 12.0,
        "width": 1280,
        "height": 720,
        "codec": "h264",
    }
    values.update(fields)
    return MediaAsset(**values)


def test_single_category_over_threshold_flags_with_reason():
    result = evaluate(_scores(violence=80))

    assert result.status == "flagged"
    assert result.reasons == ["Violent content detected (score: 80)"]
    assert result.category_scores["violence"].exceeded is True
    assert result.category_scores["adult"].exceeded is False
    # 0.6 * 80 + 0.4 * 24
    assert result.overall_score == 58


def test_low_scores_are_safe():
    result = evaluate({key: 30 for key in CATEGORY_KEYS})

    assert result.status == "safe"
    assert result.overall_score == 30
    assert result.reasons == []
    assert all(not value["exceeded"] for value in result.details().values())


def test_score_equal_to_threshold_counts_as_exceeded():
    result = evaluate(_scores(hate=60))

    assert result.status == "flagged"
    assert result.reasons == ["Hate speech or symbols detected (score: 60)"]


def test_overall_score_alone_can_flag():
    result = evaluate({"violence": 69, "adult": 69, "hate": 59, "drugs": 59, "language": 79})

    assert result.reasons == []
    assert result.overall_score == 74
    assert result.status == "flagged"


def test_overall_score_just_under_threshold_is_safe():
    result = evaluate({key: 59 for key in CATEGORY_KEYS}, SensitivityThresholds(overall=60))
    assert result.overall_score == 59
    assert result.status == "safe"

    result = evaluate({key: 59 for key in CATEGORY_KEYS}, SensitivityThresholds(overall=59))
    assert result.status == "flagged"
    assert result.reasons == []


def test_reasons_follow_category_declaration_order():
    result = evaluate(_scores(language=95, violence=75, drugs=61))

    assert result.reasons == [
        "Violent content detected (score: 75)",
        "Drug-related content detected (score: 61)",
        "Explicit language detected (score: 95)",
    ]


def test_custom_thresholds_change_the_decision():
    lenient = SensitivityThresholds(
        categories={"violence": 90, "adult": 90, "hate": 90, "drugs": 90, "language": 90},
        overall=90,
    )

    assert evaluate(_scores(violence=80), lenient).status == "safe"


def test_overall_score_weights_max_and_mean():
    assert overall_score({"violence": 100, "adult": 0, "hate": 0, "drugs": 0, "language": 0}) == 68
    assert overall_score({key: 0 for key in CATEGORY_KEYS}) == 0


def test_scores_are_clamped_into_range():
    result = evaluate(_scores(violence=150, adult=-20))

    assert result.category_scores["violence"].score == 100
    assert result.category_scores["adult"].score == 0


def test_missing_category_is_a_classification_error():
    scores = _scores()
    del scores["drugs"]

    with pytest.raises(ClassificationError, match="drugs"):
        evaluate(scores)


def test_non_numeric_score_is_a_classification_error():
    with pytest.raises(ClassificationError):
        evaluate(_scores(language="loud"))


@pytest.mark.asyncio
async def test_mock_classifier_is_seeded_and_bounded():
    first = MockSensitivityClassifier(seed=42)
    second = MockSensitivityClassifier(seed=42)

    for _ in range(20):
        a = await first.score_categories(_asset())
        b = await second.score_categories(_asset())
        assert a == b
        assert set(a) == set(CATEGORY_KEYS)
        assert all(0 <= value <= 100 for value in a.values())


@pytest.mark.asyncio
async def test_fixed_classifier_classify_records_calls():
    classifier = FixedScoreClassifier(_scores(adult=75))

    result = await classifier.classify(_asset())

    assert classifier.calls == ["asset-1"]
    assert result.reasons == ["Adult content detected (score: 75)"]


@pytest.mark.asyncio
async def test_moderation_api_classifier_posts_metadata_and_frame(tmp_path):
    frame = tmp_path / "clip_thumb.jpg"
    frame.write_bytes(b"\xff\xd8jpeg")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"scores": _scores(drugs=64)})

    classifier = ModerationApiClassifier(
        api_url="https://moderation.local/v1/score",
        api_key="secret-key",
        transport=httpx.MockTransport(handler),
    )

    result = await classifier.classify(_asset(thumbnail_path=str(frame)))

    assert seen["auth"] == "Bearer secret-key"
    assert b'name="frame"' in seen["body"]
    assert b'name="metadata"' in seen["body"]
    assert json.dumps("asset-1").encode() in seen["body"]
    assert result.status == "flagged"
    assert result.reasons == ["Drug-related content detected (score: 64)"]


@pytest.mark.asyncio
async def test_moderation_api_without_thumbnail_sends_metadata_only():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        return httpx.Response(200, json={"scores": _scores()})

    classifier = ModerationApiClassifier(
        api_url="https://moderation.local/v1/score",
        transport=httpx.MockTransport(handler),
    )

    result = await classifier.classify(_asset())

    assert b"frame" not in seen["body"]
    assert result.status == "safe"


@pytest.mark.asyncio
async def test_moderation_api_http_error_raises_classification_error():
    classifier = ModerationApiClassifier(
        api_url="https://moderation.local/v1/score",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
    )

    with pytest.raises(ClassificationError, match="request failed"):
        await classifier.score_categories(_asset())


@pytest.mark.asyncio
async def test_moderation_api_response_without_scores_raises():
    classifier = ModerationApiClassifier(
        api_url="https://moderation.local/v1/score",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"labels": []})),
    )

    with pytest.raises(ClassificationError, match="scores"):
        await classifier.score_categories(_asset())
