import json
import subprocess
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from media.probe import ProbeResult
from models.asset import AssetStatus, SensitivityStatus
from models.user import User
from routers import rate_limit
from services.asset_store import AssetStore
from services.notifier import ProgressNotifier
from services.pipeline import ProcessingPipeline
from services.processing_queue import get_pipeline
from services.sensitivity import FixedScoreClassifier
from services.session_token import create_session_token


SAFE_SCORES = {"violence": 10, "adult": 10, "hate": 10, "drugs": 10, "language": 10}
VIOLENT_SCORES = {"violence": 80, "adult": 10, "hate": 10, "drugs": 10, "language": 10}
OWNER_ID = "owner-1"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


class RecordingNotifier(ProgressNotifier):
    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((scope, event, payload))

    def for_scope(self, scope: str, event: Optional[str] = None) -> List[Dict[str, Any]]:
        return [p for s, e, p in self.events if s == scope and (event is None or e == event)]

    def names(self, scope: str) -> List[str]:
        return [e for s, e, _ in self.events if s == scope]


class StubProbe:
    def __init__(self, result: Optional[ProbeResult] = None):
        self.result = result or ProbeResult(
            duration_seconds=12.5, width=1920, height=1080, codec="h264", frame_rate=30, bitrate=4_000_000
        )
        self.calls: List[str] = []

    def probe(self, path: str) -> ProbeResult:
        self.calls.append(path)
        return self.result


class StubThumbnailer:
    def __init__(self, produce: bool = True):
        self.produce = produce

    def extract(self, source_path: str, dest_path: str, at_timestamp: str = "00:00:02") -> Optional[str]:
        if not self.produce:
            return None
        Path(dest_path).write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
        return dest_path


class FakeProcess:
    def __init__(self, args, dest_path=None, returncode=0, hang=False, stdout=b"", stderr=b""):
        self.args = args
        self.dest_path = dest_path
        self.returncode = returncode
        self.hang = hang
        self.stdout = stdout
        self.stderr = stderr
        self.killed = False

    def communicate(self, input=None, timeout=None):
        if self.hang and not self.killed:
            raise subprocess.TimeoutExpired(self.args, timeout)
        if self.dest_path and not self.killed:
            with open(self.dest_path, "wb") as handle:
                handle.write(b"\xff\xd8\xff\xe0jpeg")
        return self.stdout, self.stderr

    def kill(self):
        self.killed = True


def ffprobe_returning(output, launched=None, **kwargs):
    body = output if isinstance(output, bytes) else json.dumps(output).encode()

    def fake_popen(args, **popen_kwargs):
        process = FakeProcess(args, stdout=body, **kwargs)
        if launched is not None:
            launched.append(process)
        return process

    return fake_popen


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assets.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        session.add(User(id=OWNER_ID, email=f"{OWNER_ID}@local.invalid"))
        await session.commit()
    yield maker
    await engine.dispose()


@pytest.fixture
def store(session_maker):
    return AssetStore(session_maker)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_pipeline(store, notifier):
    def _make(classifier=None, probe=None, thumbnailer=None) -> ProcessingPipeline:
        return ProcessingPipeline(
            store=store,
            notifier=notifier,
            probe=probe or StubProbe(),
            thumbnailer=thumbnailer or StubThumbnailer(),
            classifier=classifier or FixedScoreClassifier(SAFE_SCORES),
        )

    return _make


@pytest.fixture
def make_asset(store, tmp_path):
    async def _make(
        status: str = AssetStatus.UPLOADING.value,
        size: int = 1000,
        create_file: bool = True,
        **fields: Any,
    ):
        source = tmp_path / f"video_{uuid.uuid4().hex[:8]}.mp4"
        if create_file:
            source.write_bytes(bytes(i % 256 for i in range(size)))
        values = {
            "user_id": OWNER_ID,
            "title": "Sample clip",
            "original_filename": "sample.mp4",
            "source_path": str(source),
            "mime_type": "video/mp4",
            "file_size_bytes": size,
            "status": status,
            "progress": 100 if status == AssetStatus.COMPLETED.value else 5,
            "progress_message": "",
            "sensitivity_status": SensitivityStatus.PENDING.value,
            "views": 0,
        }
        values.update(fields)
        return await store.create(**values)

    return _make


def auth_headers(user_id: str = OWNER_ID) -> Dict[str, str]:
    token = create_session_token(user_id, email=f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_client(session_maker, make_pipeline, tmp_path):
    pipeline = make_pipeline(classifier=FixedScoreClassifier(VIOLENT_SCORES))

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with patch.object(settings, "UPLOAD_DIR", str(tmp_path / "uploads")), \
            patch.object(settings, "PIPELINE_BACKEND", "inline"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            client.pipeline = pipeline
            yield client
    app.dependency_overrides.clear()
