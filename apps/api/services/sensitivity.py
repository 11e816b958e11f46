"""
Content-sensitivity scoring.

Every classifier produces one integer score in [0, 100] per category; the
flagging decision is made by `evaluate()` so that swapping the scorer (demo
generator, fixed fixtures, vendor moderation API) never changes how a video
ends up `safe` or `flagged`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel

from config import settings, require_sensitivity_api_url
from models.asset import MediaAsset, SensitivityStatus
from services.errors import ClassificationError

logger = logging.getLogger(__name__)

# Declaration order drives the order of `reasons`.
CATEGORIES: Tuple[Tuple[str, str], ...] = (
    ("violence", "Violent content"),
    ("adult", "Adult content"),
    ("hate", "Hate speech or symbols"),
    ("drugs", "Drug-related content"),
    ("language", "Explicit language"),
)
CATEGORY_KEYS = tuple(key for key, _ in CATEGORIES)
CATEGORY_LABELS = dict(CATEGORIES)

MAX_WEIGHT = 0.6
MEAN_WEIGHT = 0.4


@dataclass(frozen=True)
class SensitivityThresholds:
    categories: Dict[str, int] = field(
        default_factory=lambda: {"violence": 70, "adult": 70, "hate": 60, "drugs": 60, "language": 80}
    )
    overall: int = 65

    @classmethod
    def from_settings(cls) -> "SensitivityThresholds":
        return cls(
            categories={
                "violence": settings.SENSITIVITY_THRESHOLD_VIOLENCE,
                "adult": settings.SENSITIVITY_THRESHOLD_ADULT,
                "hate": settings.SENSITIVITY_THRESHOLD_HATE,
                "drugs": settings.SENSITIVITY_THRESHOLD_DRUGS,
                "language": settings.SENSITIVITY_THRESHOLD_LANGUAGE,
            },
            overall=settings.SENSITIVITY_OVERALL_THRESHOLD,
        )


class CategoryScore(BaseModel):
    score: int
    exceeded: bool


class SensitivityResult(BaseModel):
    status: str
    overall_score: int
    category_scores: Dict[str, CategoryScore]
    reasons: List[str]

    def details(self) -> Dict[str, Dict[str, Any]]:
        return {key: value.model_dump() for key, value in self.category_scores.items()}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_scores(raw: Mapping[str, Any]) -> Dict[str, int]:
    """Validate a scorer's output: every category present, ints clamped to 0..100."""
    missing = [key for key in CATEGORY_KEYS if key not in raw]
    if missing:
        raise ClassificationError(f"Classifier returned no score for: {', '.join(missing)}")
    normalized: Dict[str, int] = {}
    for key in CATEGORY_KEYS:
        try:
            value = int(round(float(raw[key])))
        except (TypeError, ValueError) as exc:
            raise ClassificationError(f"Invalid score for {key}: {raw[key]!r}") from exc
        normalized[key] = max(0, min(value, 100))
    return normalized


def overall_score(scores: Mapping[str, int]) -> int:
    values = [int(scores[key]) for key in CATEGORY_KEYS]
    mean = sum(values) / len(values)
    return _round_half_up(MAX_WEIGHT * max(values) + MEAN_WEIGHT * mean)


def evaluate(raw_scores: Mapping[str, Any], thresholds: Optional[SensitivityThresholds] = None) -> SensitivityResult:
    thresholds = thresholds or SensitivityThresholds()
    scores = normalize_scores(raw_scores)

    category_scores: Dict[str, CategoryScore] = {}
    reasons: List[str] = []
    for key, label in CATEGORIES:
        score = scores[key]
        exceeded = score >= thresholds.categories[key]
        category_scores[key] = CategoryScore(score=score, exceeded=exceeded)
        if exceeded:
            reasons.append(f"{label} detected (score: {score})")

    overall = overall_score(scores)
    flagged = bool(reasons) or overall >= thresholds.overall
    return SensitivityResult(
        status=SensitivityStatus.FLAGGED.value if flagged else SensitivityStatus.SAFE.value,
        overall_score=overall,
        category_scores=category_scores,
        reasons=reasons,
    )


class BaseSensitivityClassifier:
    """Scorer contract. Implementations only read the media, never write it."""

    def __init__(self, thresholds: Optional[SensitivityThresholds] = None):
        self.thresholds = thresholds or SensitivityThresholds()

    async def score_categories(self, asset: MediaAsset) -> Dict[str, int]:
        raise NotImplementedError

    def evaluate(self, scores: Mapping[str, Any]) -> SensitivityResult:
        return evaluate(scores, self.thresholds)

    async def classify(self, asset: MediaAsset) -> SensitivityResult:
        return self.evaluate(await self.score_categories(asset))


class MockSensitivityClassifier(BaseSensitivityClassifier):
    """Demo scorer: mostly low scores with an occasional medium or severe spike."""

    def __init__(
        self,
        thresholds: Optional[SensitivityThresholds] = None,
        seed: Optional[int] = None,
        delay_seconds: float = 0.0,
    ):
        super().__init__(thresholds)
        self._rng = random.Random(seed)
        self.delay_seconds = delay_seconds

    def _sample(self) -> int:
        score = self._rng.randint(0, 39)
        variance = self._rng.random()
        if variance > 0.9:
            return min(score + 50, 100)
        if variance > 0.8:
            return min(score + 30, 85)
        return score

    async def score_categories(self, asset: MediaAsset) -> Dict[str, int]:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        logger.info("Using MOCK sensitivity scores for asset %s", asset.id)
        return {key: self._sample() for key in CATEGORY_KEYS}


class FixedScoreClassifier(BaseSensitivityClassifier):
    """Deterministic scorer returning the same injected scores for every asset."""

    def __init__(self, scores: Mapping[str, int], thresholds: Optional[SensitivityThresholds] = None):
        super().__init__(thresholds)
        self.scores = dict(scores)
        self.calls: List[str] = []

    async def score_categories(self, asset: MediaAsset) -> Dict[str, int]:
        self.calls.append(asset.id)
        return dict(self.scores)


class ModerationApiClassifier(BaseSensitivityClassifier):
    """
    Scores via an external moderation service.

    Request: multipart POST with `metadata` (JSON string) and, when a
    thumbnail exists, the still image as `frame`.
    Response: {"scores": {"violence": 12, "adult": 3, ...}}.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout_seconds: float = 60.0,
        thresholds: Optional[SensitivityThresholds] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(thresholds)
        self.api_url = api_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _metadata(self, asset: MediaAsset) -> Dict[str, Any]:
        return {
            "asset_id": asset.id,
            "mime_type": asset.mime_type,
            "duration_seconds": asset.duration_seconds,
            "width": asset.width,
            "height": asset.height,
            "codec": asset.codec,
            "categories": list(CATEGORY_KEYS),
        }

    async def score_categories(self, asset: MediaAsset) -> Dict[str, int]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = None
        if asset.thumbnail_path:
            try:
                with open(asset.thumbnail_path, "rb") as frame:
                    files = {"frame": ("frame.jpg", frame.read(), "image/jpeg")}
            except OSError as exc:
                logger.warning("Thumbnail unreadable for asset %s, scoring metadata only: %s", asset.id, exc)

        data = {"metadata": json.dumps(self._metadata(asset))}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.api_url, data=data, files=files, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ClassificationError(f"Moderation service request failed: {exc}") from exc
        except ValueError as exc:
            raise ClassificationError("Moderation service returned invalid JSON") from exc

        scores = payload.get("scores") if isinstance(payload, dict) else None
        if not isinstance(scores, dict):
            raise ClassificationError("Moderation service response is missing 'scores'")
        return normalize_scores(scores)


def build_classifier() -> BaseSensitivityClassifier:
    """Return the classifier selected by SENSITIVITY_PROVIDER."""
    thresholds = SensitivityThresholds.from_settings()
    provider = (settings.SENSITIVITY_PROVIDER or "mock").strip().lower()
    if provider == "api":
        return ModerationApiClassifier(
            api_url=require_sensitivity_api_url(),
            api_key=settings.SENSITIVITY_API_KEY,
            timeout_seconds=settings.SENSITIVITY_API_TIMEOUT_SECONDS,
            thresholds=thresholds,
        )
    if provider != "mock":
        raise ValueError(f"Unknown SENSITIVITY_PROVIDER: {settings.SENSITIVITY_PROVIDER}")
    return MockSensitivityClassifier(
        thresholds=thresholds,
        delay_seconds=settings.SENSITIVITY_MOCK_DELAY_SECONDS,
    )
