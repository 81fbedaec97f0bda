# evidence_routes.py

from __future__ import annotations

import logging
import shutil
import tempfile
from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from sqlalchemy.orm import Session

from db import SessionLocal, get_db
from evidence_clients import (
    EvidenceServiceClient,
    EvidenceServiceError,
    delete_evidence,
    download_evidence,
)
from evidence_intake import RawFile, submit
from evidence_processor import check_run, retry_failed, run_batch, select_retry
from evidence_status import snapshot
from evidence_store import load_tickets, save_batch
from evidence_targets import assign, resolve, resolve_single
from evidence_tickets import (
    EvidenceBatch,
    EvidenceError,
    ExistingRecord,
    NewRecord,
    UnassignedTicketsError,
)
from schemas_evidence import AssignmentsIn, BatchSummary, RetryIn, RunAcceptedOut
from security import owner_reference, verify_internal_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["evidence"], dependencies=[Depends(verify_internal_key)])

# Files above this stay on disk while they wait for upload
SPOOL_MAX_MEMORY = 5 * 1024 * 1024

# Live batches for this process. Discarded batches are dropped; their
# in-flight completions then only touch the detached ticket objects.
_batches: Dict[str, EvidenceBatch] = {}


def get_evidence_client() -> EvidenceServiceClient:
    return EvidenceServiceClient()


def _get_batch(batch_id: str) -> EvidenceBatch:
    batch = _batches.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Evidence batch not found")
    return batch


def _spool(upload: UploadFile) -> RawFile:
    spooled = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
    upload.file.seek(0)
    shutil.copyfileobj(upload.file, spooled)
    size = spooled.tell()
    spooled.seek(0)
    return RawFile(
        filename=upload.filename or "unnamed",
        content_type=upload.content_type or "",
        byte_size=size,
        stream=spooled,
    )


def _record(batch: EvidenceBatch) -> None:
    db = SessionLocal()
    try:
        save_batch(db, batch)
    finally:
        db.close()


async def _run_in_background(batch: EvidenceBatch, client: EvidenceServiceClient, retry_ids=None, retry=False):
    try:
        if retry:
            await retry_failed(batch, client, retry_ids)
        else:
            await run_batch(batch, client)
    except (EvidenceError, ValueError) as e:
        # preconditions changed between the request and the task starting
        logger.warning("batch %s run did not start: %s", batch.id, e)
    finally:
        # commits block; keep them off the loop other runs share
        await run_in_threadpool(_record, batch)


# ----------------------------
# POST /evidence-batches (intake)
# ----------------------------

@router.post("/evidence-batches", response_model=BatchSummary)
def create_evidence_batch(
    files: List[UploadFile] = File(...),
    record_id: Optional[int] = Form(None),
    owner: Optional[str] = Depends(owner_reference),
    db: Session = Depends(get_db),
):
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    batch = EvidenceBatch(owner_reference=owner)
    batch.add(submit(_spool(f) for f in files))

    # single-destination flow: everything goes to one existing item
    if record_id is not None:
        resolve_single(batch.tickets, record_id)

    _batches[batch.id] = batch
    save_batch(db, batch)

    logger.info("batch %s created with %d file(s)", batch.id, len(batch))
    return snapshot(batch.tickets, batch.id)


# ----------------------------
# PUT /evidence-batches/{id}/assignments
# ----------------------------

@router.put("/evidence-batches/{batch_id}/assignments", response_model=BatchSummary)
def assign_destinations(batch_id: str, payload: AssignmentsIn, db: Session = Depends(get_db)):
    batch = _get_batch(batch_id)
    if batch.running:
        raise HTTPException(status_code=409, detail="Batch is uploading; assignments are locked")

    for ticket_id, target in payload.assignments.items():
        try:
            ticket = batch.get(ticket_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Ticket not found: {ticket_id}")

        if target is None:
            key = None
        elif target.record_id is not None:
            key = ExistingRecord(target.record_id)
        else:
            key = NewRecord(target.new_record_name)

        try:
            assign(ticket, key)
        except EvidenceError as e:
            raise HTTPException(status_code=409, detail=str(e))

    save_batch(db, batch)
    return snapshot(batch.tickets, batch.id)


# ----------------------------
# DELETE /evidence-batches/{id}/tickets/{ticket_id}
# ----------------------------

@router.delete("/evidence-batches/{batch_id}/tickets/{ticket_id}", response_model=BatchSummary)
def remove_ticket(batch_id: str, ticket_id: str, db: Session = Depends(get_db)):
    batch = _get_batch(batch_id)
    try:
        batch.remove(ticket_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Ticket not found: {ticket_id}")
    except EvidenceError as e:
        raise HTTPException(status_code=409, detail=str(e))

    save_batch(db, batch)
    return snapshot(batch.tickets, batch.id)


# ----------------------------
# POST /evidence-batches/{id}/run
# ----------------------------

@router.post("/evidence-batches/{batch_id}/run", response_model=RunAcceptedOut, status_code=202)
def start_batch_run(
    batch_id: str,
    background_tasks: BackgroundTasks,
    client: EvidenceServiceClient = Depends(get_evidence_client),
):
    batch = _get_batch(batch_id)
    resolution = resolve(batch.tickets)

    try:
        check_run(batch, resolution)
    except UnassignedTicketsError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": f"Cannot proceed: {e}", "unassigned": e.ticket_ids},
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EvidenceError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(_run_in_background, batch, client)

    return RunAcceptedOut(
        batch_id=batch.id,
        status="queued",
        groups=len(resolution.groups),
        tickets=resolution.ticket_count,
    )


# ----------------------------
# POST /evidence-batches/{id}/retry
# ----------------------------

@router.post("/evidence-batches/{batch_id}/retry", response_model=RunAcceptedOut, status_code=202)
def retry_batch_tickets(
    batch_id: str,
    payload: RetryIn,
    background_tasks: BackgroundTasks,
    client: EvidenceServiceClient = Depends(get_evidence_client),
):
    batch = _get_batch(batch_id)

    try:
        targets = select_retry(batch, payload.ticket_ids)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Ticket not found: {e.args[0]}")
    except UnassignedTicketsError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": f"Cannot retry: {e}", "unassigned": e.ticket_ids},
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EvidenceError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not targets:
        raise HTTPException(status_code=409, detail="No failed tickets to retry")

    background_tasks.add_task(_run_in_background, batch, client, [t.id for t in targets], True)

    return RunAcceptedOut(
        batch_id=batch.id,
        status="queued",
        # every target has a destination once select_retry passes
        groups=len({t.destination for t in targets}),
        tickets=len(targets),
    )


# ----------------------------
# GET /evidence-batches/{id}
# ----------------------------

@router.get("/evidence-batches/{batch_id}", response_model=BatchSummary)
def get_evidence_batch(batch_id: str, db: Session = Depends(get_db)):
    batch = _batches.get(batch_id)
    if batch is not None:
        return snapshot(batch.tickets, batch.id)

    tickets = load_tickets(db, batch_id)
    if tickets is None:
        raise HTTPException(status_code=404, detail="Evidence batch not found")
    return snapshot(tickets, batch_id)


# ----------------------------
# DELETE /evidence-batches/{id}
# ----------------------------

@router.delete("/evidence-batches/{batch_id}")
async def discard_evidence_batch(batch_id: str):
    batch = _batches.pop(batch_id, None)
    if batch is None:
        raise HTTPException(status_code=404, detail="Evidence batch not found")

    # cancelling the run task must happen on the loop that owns it
    batch.discard()
    await run_in_threadpool(_record, batch)
    return {"status": "discarded", "batch_id": batch_id}


# ----------------------------
# Evidence management (proxied)
# ----------------------------

@router.delete("/evidence/{evidence_id}")
def remove_evidence(evidence_id: int):
    try:
        delete_evidence(evidence_id)
    except EvidenceServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"success": True, "message": "Evidence deleted successfully"}


@router.get("/evidence/{evidence_id}/download")
def fetch_evidence(evidence_id: int):
    try:
        content, filename = download_evidence(evidence_id)
    except EvidenceServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
