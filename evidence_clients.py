# evidence_clients.py

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Any, BinaryIO, Dict, Optional, Tuple

import httpx
import requests

from evidence_tickets import EvidenceError, ProvisioningError, TransferError, UploadResult

logger = logging.getLogger(__name__)


# --------------------------------------------------------
# Environment
# --------------------------------------------------------

EVIDENCE_API_URL = os.getenv("EVIDENCE_API_URL", "http://localhost:3000")
EVIDENCE_API_TOKEN = os.getenv("EVIDENCE_API_TOKEN")
EVIDENCE_UPLOAD_TIMEOUT = float(os.getenv("EVIDENCE_UPLOAD_TIMEOUT", "120"))


class EvidenceServiceError(EvidenceError):
    def __init__(self, message: str, status_code: int = 502):
        self.status_code = status_code
        super().__init__(message)


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _error_message(response, default: str) -> str:
    """Pull the server's own message out of an error body when there is one."""
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body.get("message") or default)
    return default


def _describe_transport_error(exc: Exception) -> str:
    detail = str(exc).strip()
    return f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"not a timestamp: {value!r}")


def parse_upload_result(body: Any, *, ticket_id: str, original_name: str, category: str) -> UploadResult:
    """
    Accept both the flat shape
        {evidenceId, storedLocation, category, createdAt, originalName}
    and the nested one the item pages use
        {evidence: {id, url | cloudinaryId, type, createdAt, originalName}}.
    """
    if not isinstance(body, dict):
        raise TransferError("malformed upload response")

    try:
        if isinstance(body.get("evidence"), dict):
            ev = body["evidence"]
            evidence_id = ev["id"]
            location = ev.get("url") or ev.get("cloudinaryId") or body.get("cloudinaryUrl")
            stored_category = ev.get("type") or category
            created_at = ev.get("createdAt")
            name = ev.get("originalName") or original_name
        else:
            evidence_id = body["evidenceId"]
            location = body.get("storedLocation")
            stored_category = body.get("category") or category
            created_at = body.get("createdAt")
            name = body.get("originalName") or original_name

        if not location:
            raise KeyError("storedLocation")

        return UploadResult(
            evidence_id=int(evidence_id),
            stored_location=str(location),
            category=str(stored_category),
            created_at=_parse_timestamp(created_at) if created_at else datetime.utcnow(),
            original_name=str(name),
            ticket_id=ticket_id,
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("malformed upload response for ticket %s: %r", ticket_id, e)
        raise TransferError("malformed upload response") from e


# --------------------------------------------------------
# Async client used by the pipeline
# --------------------------------------------------------

class EvidenceServiceClient:
    """
    Talks to the record + evidence service.

    create_record() and upload_evidence() are the pipeline's only
    suspension points that leave the process.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or EVIDENCE_API_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else EVIDENCE_API_TOKEN
        self.timeout = timeout if timeout is not None else EVIDENCE_UPLOAD_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # timeout <= 0 disables the per-transfer limit
        timeout = httpx.Timeout(self.timeout) if self.timeout and self.timeout > 0 else httpx.Timeout(None)
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=_auth_headers(self.api_token),
            timeout=timeout,
            transport=self._transport,
        )

    async def create_record(self, name: str, description: str, owner_reference: str) -> int:
        payload = {"name": name, "description": description, "ownerId": owner_reference}

        async with self._client() as client:
            try:
                response = await client.post("/api/items", json=payload)
            except httpx.RequestError as e:
                raise ProvisioningError(_describe_transport_error(e)) from e

        if not response.is_success:
            raise ProvisioningError(_error_message(response, f"create record failed (HTTP {response.status_code})"))

        try:
            body = response.json()
            item = body.get("item") if isinstance(body.get("item"), dict) else body
            return int(item["id"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ProvisioningError("malformed create record response") from e

    async def upload_evidence(
        self,
        source: BinaryIO,
        *,
        filename: str,
        content_type: str,
        record_id: int,
        category: str,
        ticket_id: str,
    ) -> UploadResult:
        source.seek(0)
        files = {"file": (filename, source, content_type or "application/octet-stream")}
        data = {"itemId": str(record_id), "type": category}

        async with self._client() as client:
            try:
                response = await client.post("/api/upload", files=files, data=data)
            except httpx.RequestError as e:
                raise TransferError(_describe_transport_error(e)) from e

        if not response.is_success:
            raise TransferError(_error_message(response, f"Upload failed (HTTP {response.status_code})"))

        try:
            body = response.json()
        except ValueError as e:
            raise TransferError("malformed upload response") from e

        return parse_upload_result(body, ticket_id=ticket_id, original_name=filename, category=category)


# --------------------------------------------------------
# Sync management calls (not part of ingestion)
# --------------------------------------------------------

_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def delete_evidence(evidence_id: int) -> None:
    r = requests.delete(
        f"{EVIDENCE_API_URL.rstrip('/')}/api/evidence/{evidence_id}",
        headers=_auth_headers(EVIDENCE_API_TOKEN),
        timeout=30,
    )
    if r.status_code == 404:
        raise EvidenceServiceError("Evidence not found", status_code=404)
    if r.status_code >= 400:
        raise EvidenceServiceError(
            _error_message(r, f"Failed to delete evidence (HTTP {r.status_code})."),
            status_code=502,
        )


def download_evidence(evidence_id: int) -> Tuple[bytes, str]:
    """
    Fetch raw evidence bytes. Returns (content, filename); the filename comes
    from Content-Disposition when the service sends one.
    """
    r = requests.get(
        f"{EVIDENCE_API_URL.rstrip('/')}/api/evidence/{evidence_id}/download",
        headers=_auth_headers(EVIDENCE_API_TOKEN),
        timeout=120,
    )
    if r.status_code == 404:
        raise EvidenceServiceError("Evidence not found", status_code=404)
    if r.status_code != 200:
        raise EvidenceServiceError(f"Failed to download evidence (HTTP {r.status_code}).", status_code=502)

    match = _FILENAME_RE.search(r.headers.get("Content-Disposition", ""))
    filename = match.group(1) if match else f"evidence-{evidence_id}"
    return r.content, filename
