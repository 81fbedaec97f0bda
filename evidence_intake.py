# evidence_intake.py

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO, Iterable, List, Optional

from PIL import Image

from evidence_tickets import FileTicket, TicketState, ValidationError

logger = logging.getLogger(__name__)


# --------------------------------------------------------
# Limits + allow-lists
# --------------------------------------------------------

MAX_FILE_BYTES = 52_428_800  # 50 MiB, inclusive

ALLOWED_TYPES = {
    "photo": {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"},
    "video": {"video/mp4", "video/mov", "video/avi", "video/webm"},
    "document": {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
    },
}

PREVIEW_SIZE = (256, 256)


@dataclass
class RawFile:
    filename: str
    content_type: str
    byte_size: int
    stream: BinaryIO


def _normalize_type(content_type: Optional[str]) -> str:
    # "Image/PNG; charset=binary" -> "image/png"
    return (content_type or "").split(";", 1)[0].strip().lower()


def classify(content_type: Optional[str]) -> str:
    mime = _normalize_type(content_type)
    if mime.startswith("image/"):
        return "photo"
    if mime.startswith("video/"):
        return "video"
    return "document"


def validate(byte_size: int, content_type: Optional[str]) -> str:
    """
    Return the category for an acceptable file, or raise ValidationError.
    Size is checked first so oversize files are rejected regardless of type.
    """
    if byte_size > MAX_FILE_BYTES:
        raise ValidationError("file too large")

    category = classify(content_type)
    mime = _normalize_type(content_type)
    if mime not in ALLOWED_TYPES[category]:
        raise ValidationError(f"unsupported file type: {content_type or ''}")

    return category


def build_preview(stream: BinaryIO) -> Optional[str]:
    """
    Render a small JPEG thumbnail as a data URL. Best effort: any failure
    returns None and leaves the stream positioned at the start.
    """
    try:
        stream.seek(0)
        with Image.open(stream) as img:
            img = img.convert("RGB")
            img.thumbnail(PREVIEW_SIZE)
            buf = BytesIO()
            img.save(buf, format="JPEG", quality=70)
        return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("utf-8")
    except Exception as e:
        logger.debug("preview generation failed: %r", e)
        return None
    finally:
        try:
            stream.seek(0)
        except Exception:
            pass


def submit(raw_files: Iterable[RawFile]) -> List[FileTicket]:
    """
    Turn raw files into tickets. Never raises: every outcome is recorded on
    the ticket (PENDING when accepted, REJECTED with a reason otherwise).
    """
    tickets: List[FileTicket] = []

    for raw in raw_files:
        ticket = FileTicket(
            original_name=raw.filename or "unnamed",
            byte_size=raw.byte_size,
            content_type=_normalize_type(raw.content_type),
            category=classify(raw.content_type),
            source=raw.stream,
        )

        try:
            ticket.category = validate(raw.byte_size, raw.content_type)
        except ValidationError as e:
            ticket.state = TicketState.REJECTED
            ticket.error = str(e)
            ticket.release_source()
            logger.info("rejected %s (%d bytes): %s", ticket.original_name, ticket.byte_size, e)
            tickets.append(ticket)
            continue

        if ticket.category == "photo":
            ticket.preview = build_preview(raw.stream)

        tickets.append(ticket)

    return tickets
