from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from conftest import OWNER_ID, SAFE_SCORES, auth_headers
from config import settings
from models.asset import AssetStatus
from routers import rate_limit
from services.notifier import user_scope
from services.processing_queue import drain_background_tasks
from services.sensitivity import FixedScoreClassifier


def _upload(client, filename="holiday.mp4", content=b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 256,
            content_type="video/mp4", user_id=OWNER_ID, title=None):
    data = {"title": title} if title else None
    return client.post(
        "/videos/upload",
        files={"file": (filename, content, content_type)},
        data=data,
        headers=auth_headers(user_id),
    )


@pytest.mark.asyncio
async def test_upload_returns_uploading_record_and_processes_in_background(api_client, notifier):
    response = await _upload(api_client, title="Holiday")

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "uploading"
    assert body["progress"] == 5
    assert body["title"] == "Holiday"
    assert body["original_filename"] == "holiday.mp4"
    assert body["sensitivity"]["status"] == "pending"
    assert body["file_size_bytes"] == 268
    assert notifier.for_scope(user_scope(OWNER_ID), "upload:complete")[0]["asset_id"] == body["id"]

    await drain_background_tasks()

    status = await api_client.get(f"/videos/{body['id']}/status", headers=auth_headers())
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert status.json()["progress"] == 100
    assert status.json()["message"] == "Video processed - Content flagged for review"
    assert status.json()["sensitivity"]["reasons"] == ["Violent content detected (score: 80)"]

    detail = await api_client.get(f"/videos/{body['id']}", headers=auth_headers())
    assert detail.json()["has_thumbnail"] is True
    assert detail.json()["duration_seconds"] == 12.5
    assert detail.json()["stream_url"] == f"/videos/{body['id']}/stream"


@pytest.mark.asyncio
async def test_upload_stores_file_under_owner_directory(api_client, tmp_path):
    response = await _upload(api_client, filename="../../etc/evil name.mp4")
    await drain_background_tasks()

    assert response.status_code == 201
    assert response.json()["original_filename"] == "evil_name.mp4"
    stored = list((tmp_path / "uploads" / OWNER_ID).glob("*_evil_name.mp4"))
    assert len(stored) == 1


@pytest.mark.asyncio
async def test_upload_rejects_non_video(api_client):
    response = await _upload(api_client, filename="notes.txt", content=b"hello", content_type="text/plain")

    assert response.status_code == 422
    assert "Unsupported file type" in response.json()["detail"]


@pytest.mark.asyncio
async def test_upload_rejects_oversized_file(api_client, tmp_path):
    with patch.object(settings, "MAX_UPLOAD_BYTES", 100):
        response = await _upload(api_client, content=b"\x00" * 500)

    assert response.status_code == 413
    assert list((tmp_path / "uploads" / OWNER_ID).glob("*")) == []


@pytest.mark.asyncio
async def test_upload_requires_session_token(api_client):
    response = await api_client.post(
        "/videos/upload",
        files={"file": ("clip.mp4", b"\x00" * 10, "video/mp4")},
    )
    assert response.status_code == 401

    response = await api_client.post(
        "/videos/upload",
        files={"file": ("clip.mp4", b"\x00" * 10, "video/mp4")},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_video_detail_is_scoped_to_owner(api_client, make_asset):
    asset = await make_asset(status=AssetStatus.COMPLETED.value)

    own = await api_client.get(f"/videos/{asset.id}", headers=auth_headers())
    other = await api_client.get(f"/videos/{asset.id}", headers=auth_headers("intruder"))
    missing = await api_client.get("/videos/does-not-exist", headers=auth_headers())

    assert own.status_code == 200
    assert own.json()["id"] == asset.id
    assert other.status_code == 404
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_status_reports_failure_details(api_client, make_asset):
    asset = await make_asset(
        status=AssetStatus.FAILED.value,
        progress=10,
        progress_message="Processing failed: Video file not found",
        error_message="Video file not found",
    )

    response = await api_client.get(f"/videos/{asset.id}/status", headers=auth_headers())

    assert response.json() == {
        "status": "failed",
        "progress": 10,
        "message": "Processing failed: Video file not found",
        "error_message": "Video file not found",
        "sensitivity": {"status": "pending", "score": None, "details": {}, "reasons": []},
    }


@pytest.mark.asyncio
async def test_stats_aggregate_owner_videos(api_client, make_asset):
    await make_asset(status=AssetStatus.COMPLETED.value, sensitivity_status="safe", views=3, duration_seconds=10.0)
    await make_asset(status=AssetStatus.COMPLETED.value, sensitivity_status="flagged", views=1, duration_seconds=20.0)
    await make_asset(status=AssetStatus.PROCESSING.value)

    response = await api_client.get("/videos/stats", headers=auth_headers())

    assert response.status_code == 200
    assert response.json() == {
        "total_videos": 3,
        "total_size_bytes": 3000,
        "total_views": 4,
        "avg_duration_seconds": 15.0,
        "safe_videos": 1,
        "flagged_videos": 1,
        "processing_videos": 1,
    }


@pytest.mark.asyncio
async def test_reanalyze_completed_video(api_client, make_asset, store):
    asset = await make_asset(status=AssetStatus.COMPLETED.value, sensitivity_status="flagged")
    api_client.pipeline.classifier = FixedScoreClassifier(SAFE_SCORES)

    response = await api_client.post(f"/videos/{asset.id}/reanalyze", headers=auth_headers())
    assert response.status_code == 202
    assert response.json() == {"video_id": asset.id, "message": "Reanalysis started"}

    await drain_background_tasks()

    refreshed = await store.get_by_id(asset.id)
    assert refreshed.status == "completed"
    assert refreshed.sensitivity_status == "safe"
    assert refreshed.progress == 100


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["uploading", "processing", "analyzing", "failed"])
async def test_reanalyze_rejected_unless_completed(api_client, make_asset, status):
    asset = await make_asset(status=status)

    response = await api_client.post(f"/videos/{asset.id}/reanalyze", headers=auth_headers())

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reanalyze_rejected_while_pipeline_holds_asset(api_client, make_asset):
    asset = await make_asset(status=AssetStatus.COMPLETED.value)
    pipeline = api_client.pipeline
    lock = pipeline._lock_for(asset.id)
    await lock.acquire()
    try:
        response = await api_client.post(f"/videos/{asset.id}/reanalyze", headers=auth_headers())
    finally:
        pipeline._release(asset.id, lock)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters():
    dependency = rate_limit.rate_limit("video_upload", limit=2, window_seconds=60)
    request = SimpleNamespace(
        app=SimpleNamespace(state=SimpleNamespace(disable_rate_limits=False)),
        headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"},
        client=SimpleNamespace(host="10.0.0.1"),
    )

    with patch("routers.rate_limit._consume_redis_quota", side_effect=ConnectionError("redis down")):
        await dependency(request)
        await dependency(request)
        with pytest.raises(HTTPException) as exc_info:
            await dependency(request)

    assert exc_info.value.status_code == 429
    assert int(exc_info.value.headers["Retry-After"]) >= 1
    assert "vsp:rate:video_upload:203.0.113.9" in rate_limit._local_counters
