"""
Presentation API request/response models.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any

from ..core.schema import ClassroomStatus, FacultyAvailability, FeedbackStatus


class HealthResponse(BaseModel):
    status: str
    version: str
    boards: Dict[str, str]


class BoardResponse(BaseModel):
    table: str
    state: str
    last_error: Optional[str] = None
    count: int
    items: List[Dict[str, Any]]


class StatsResponse(BaseModel):
    table: str
    total: int
    counts: Dict[str, int]


class MutationRequest(BaseModel):
    kind: str
    entity_id: Optional[str] = None
    fields: Dict[str, Any] = {}

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        valid_kinds = ['insert', 'update', 'delete']
        if v.strip().lower() not in valid_kinds:
            raise ValueError(f'kind must be one of: {valid_kinds}')
        return v.strip().lower()


class MutationResponse(BaseModel):
    table: str
    status: str  # confirmed, rolled_back, discarded
    mutation_id: str
    entity_id: Optional[str] = None


class BulkMutationResponse(BaseModel):
    table: str
    confirmed: int
    rolled_back: int


class ClassroomStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        valid_statuses = {s.value.lower(): s.value for s in ClassroomStatus}
        status = valid_statuses.get(v.strip().lower())
        if status is None:
            raise ValueError(f'status must be one of: {list(valid_statuses.values())}')
        return status


class FacultyStatusRequest(BaseModel):
    status: str
    return_date: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        valid_statuses = [s.value for s in FacultyAvailability]
        if v.upper() not in valid_statuses:
            raise ValueError(f'status must be one of: {valid_statuses}')
        return v.upper()


class VoteRequest(BaseModel):
    voted: bool = False


class AnnouncementCreateRequest(BaseModel):
    title: str
    content: str
    target_role: Optional[str] = None

    @field_validator('title')
    @classmethod
    def title_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('title cannot be empty')
        return v

    @field_validator('content')
    @classmethod
    def content_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('content cannot be empty')
        return v


class AnnouncementUpdateRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    target_role: Optional[str] = None

    @field_validator('title', 'content')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if v is not None and not v.strip():
            raise ValueError('text fields cannot be empty')
        return v


class FeedbackRequest(BaseModel):
    subject: str
    message: str

    @field_validator('subject', 'message')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('subject and message are both required')
        return v.strip()


class FeedbackStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        valid_statuses = [s.value for s in FeedbackStatus]
        if v.strip().lower() not in valid_statuses:
            raise ValueError(f'status must be one of: {valid_statuses}')
        return v.strip().lower()
