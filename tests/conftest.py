import os
from io import BytesIO

import pytest
from PIL import Image

# Keep test runs from writing logs/app.log next to the sources
os.environ.setdefault("APP_FILE_LOG", "0")

from draft_images import DraftImageService  # noqa: E402
from draft_locks import LockManager  # noqa: E402
from draft_store import DraftStore  # noqa: E402

ITEM_ID = "550e8400-e29b-41d4-a716-446655440000"


def make_image_bytes(fmt: str = "PNG", size=(4, 4), color=(200, 30, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def store(tmp_path):
    return DraftStore(tmp_path / "data")


@pytest.fixture
def locks(store):
    return LockManager(store, duration=30.0, retry_delay=0.001, max_retries=2000)


@pytest.fixture
def service(store, locks, tmp_path):
    return DraftImageService(store, locks, tmp_path / "uploads")


@pytest.fixture
def client(tmp_path, monkeypatch):
    from fastapi.testclient import TestClient

    monkeypatch.setenv("DRAFTS_UPLOADS_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("DRAFTS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DRAFTS_CONFIG_PATH", str(tmp_path / "drafts_config.json"))
    monkeypatch.setenv("DRAFTS_LOCK_RETRY_DELAY", "0.01")

    import main

    with TestClient(main.app) as test_client:
        yield test_client
