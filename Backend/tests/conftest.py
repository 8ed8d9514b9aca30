"""
Shared fixtures: a throwaway SQLite database, local object storage and
tiny in-memory frame archives.
"""
from __future__ import annotations

import io
import zipfile

import pytest
from PIL import Image

import subocr.db as db
from subocr.core.config import settings
from subocr.services.storage import LocalStorageProvider
from subocr.services.task_manager import TaskManager


@pytest.fixture
def sqlite_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "jobs.db"))
    db.init_db()
    return db.DB_PATH


@pytest.fixture
def manager(sqlite_db):
    return TaskManager()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


def make_png(width: int = 320, height: int = 180, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_zip(names, image_bytes: bytes = None) -> bytes:
    """ZIP with one small image per name (non-image names get text content)."""
    payload = image_bytes or make_png()
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name in names:
            zf.writestr(name, payload if name.lower().endswith((".png", ".jpg", ".jpeg")) else b"notes")
    return buffer.getvalue()
