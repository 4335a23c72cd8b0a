from typing import Literal

from pydantic import BaseModel, Field

DeletionType = Literal["full", "prompts", "evaluations", "activity"]
DeletionStatus = Literal["pending", "processing", "completed", "failed"]


class DeletionCreate(BaseModel):
    deletion_type: DeletionType


class DeletionCreated(BaseModel):
    """The confirmation code is shown once; in production it goes out by e-mail."""

    request_id: str
    confirmation_code: str


class DeletionConfirm(BaseModel):
    confirmation_code: str = Field(..., min_length=1, max_length=64)


class DeletionResponse(BaseModel):
    id: str
    deletion_type: DeletionType
    status: DeletionStatus
    deleted_record_count: int = 0
    error_message: str | None = None
    requested_at: str
    confirmed_at: str | None = None
    completed_at: str | None = None


class DeletionHistory(BaseModel):
    deletions: list[DeletionResponse]
    total: int
