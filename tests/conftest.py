from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from datetime import datetime
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_DB_DIR = tempfile.mkdtemp(prefix="evidence-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_DB_DIR}/evidence.db")
os.environ.setdefault("INTERNAL_BACKEND_KEY", "test-internal-key")
os.environ.setdefault("EVIDENCE_PROGRESS_INTERVAL", "0.01")

from db import engine  # noqa: E402
from evidence_intake import RawFile  # noqa: E402
from evidence_tickets import ProvisioningError, TransferError, UploadResult  # noqa: E402
from models_evidence import Base  # noqa: E402

MIB = 1024 * 1024


@pytest.fixture(scope="session", autouse=True)
def _tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def png_bytes(size=(64, 48), color=(200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def jpeg_bytes(size=(64, 48)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, (10, 120, 60)).save(buf, format="JPEG")
    return buf.getvalue()


def raw(name: str, content_type: str, data: bytes = b"x", byte_size: int | None = None) -> RawFile:
    # byte_size may be declared larger than data so size checks need no real payload
    return RawFile(
        filename=name,
        content_type=content_type,
        byte_size=len(data) if byte_size is None else byte_size,
        stream=BytesIO(data),
    )


class FakeEvidenceService:
    """In-process stand-in for the record + evidence service."""

    def __init__(self, *, fail_names=(), fail_files=(), upload_delay=0.0, first_record_id=100):
        self.fail_names = set(fail_names)
        self.fail_files = set(fail_files)
        self.upload_delay = upload_delay
        self.create_calls: list[tuple[str, str, str]] = []
        self.upload_calls: list[tuple[str, int, str]] = []
        self.active_uploads = 0
        self.max_active_uploads = 0
        self._next_record = first_record_id
        self._next_evidence = 1

    async def create_record(self, name, description, owner_reference):
        self.create_calls.append((name, description, owner_reference))
        await asyncio.sleep(0)
        if name in self.fail_names:
            raise ProvisioningError("Failed to create item")
        record_id = self._next_record
        self._next_record += 1
        return record_id

    async def upload_evidence(self, source, *, filename, content_type, record_id, category, ticket_id):
        self.upload_calls.append((filename, record_id, category))
        self.active_uploads += 1
        self.max_active_uploads = max(self.max_active_uploads, self.active_uploads)
        try:
            await asyncio.sleep(self.upload_delay)
            if filename in self.fail_files:
                raise TransferError("Item not found")
            evidence_id = self._next_evidence
            self._next_evidence += 1
            return UploadResult(
                evidence_id=evidence_id,
                stored_location=f"evidence/item_{record_id}/{category}/{filename}",
                category=category,
                created_at=datetime(2024, 5, 1, 12, 0, 0),
                original_name=filename,
                ticket_id=ticket_id,
            )
        finally:
            self.active_uploads -= 1


@pytest.fixture
def service() -> FakeEvidenceService:
    return FakeEvidenceService()
