# schemas_evidence.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class StateCounts(BaseModel):
    pending: int = 0
    uploading: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0


class UploadResultOut(BaseModel):
    evidence_id: int
    stored_location: str
    category: str
    created_at: datetime
    original_name: str


class TicketDetailOut(BaseModel):
    id: str
    original_name: str
    category: str
    byte_size: int
    destination: str
    state: str
    progress: int
    message: Optional[str] = None
    preview: Optional[str] = None
    result: Optional[UploadResultOut] = None


class BatchSummary(BaseModel):
    batch_id: Optional[str] = None
    counts: StateCounts
    total: int
    assignment_coverage: float
    assignment_label: str
    by_category: Dict[str, int]
    tickets: List[TicketDetailOut]


class AssignmentIn(BaseModel):
    record_id: Optional[int] = None
    new_record_name: Optional[str] = Field(None, min_length=1)

    @model_validator(mode="after")
    def _exactly_one(self):
        if (self.record_id is None) == (self.new_record_name is None):
            raise ValueError("provide exactly one of record_id or new_record_name")
        return self


class AssignmentsIn(BaseModel):
    assignments: Dict[str, Optional[AssignmentIn]]


class RetryIn(BaseModel):
    ticket_ids: Optional[List[str]] = None


class RunAcceptedOut(BaseModel):
    batch_id: str
    status: str
    groups: int
    tickets: int
