"""
Pydantic models for Email Profile Crawler
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class IdentifierStatus(str, Enum):
    """Lifecycle state of one identifier in the work queue"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class IdentifierRecord(BaseModel):
    """One row of the work queue"""
    identifier: str
    status: IdentifierStatus = IdentifierStatus.PENDING
    has_result: bool = False
    no_result: bool = False
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_result_flags(self):
        """At most one result flag, and only for successful lookups"""
        if self.has_result and self.no_result:
            raise ValueError("has_result and no_result are mutually exclusive")
        if (self.has_result or self.no_result) and self.status != IdentifierStatus.SUCCESS:
            raise ValueError("result flags may only be set when status is success")
        return self


class RawAccount(BaseModel):
    """Login pair consumed by the provisioning service"""
    identifier: str
    secret: str

    @field_validator("identifier", "secret")
    @classmethod
    def validate_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("account fields must not be blank")
        return v

    def to_line(self) -> str:
        return f"{self.identifier}|{self.secret}"


class ProfileData(BaseModel):
    """Profile fields decoded from a lookup payload"""
    name: str = ""
    url: str = ""
    location: str = ""
    extra: str = ""

    @property
    def is_usable(self) -> bool:
        return bool(self.name) and self.name not in ("null", "{}")


class LookupResponse(BaseModel):
    """Raw outcome of one lookup request"""
    status_code: int
    payload: Optional[Any] = None

    @property
    def is_success(self) -> bool:
        return self.status_code == 200


class ProvisioningResult(BaseModel):
    """Outcome of exchanging one raw account for a credential"""
    account: RawAccount
    token: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.token)


class ImportReport(BaseModel):
    """Result of parsing an identifier file"""
    identifiers: List[str] = Field(default_factory=list)
    invalid: int = 0
    duplicates: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> int:
        return len(self.identifiers)


class RunStats(BaseModel):
    """Counts derived from the work queue at one instant"""
    pending: int = 0
    success: int = 0
    failed: int = 0
    has_result: int = 0
    no_result: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.success + self.failed

    @property
    def remaining(self) -> int:
        """Identifiers without a successful terminal state"""
        return self.pending + self.failed

    def as_dict(self) -> Dict[str, int]:
        return self.model_dump()


class DispatchStats(BaseModel):
    """Counters for one dispatch round"""
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    has_result: int = 0
    credentials_exhausted: bool = False
    cancelled: bool = False


class RetrySummary(BaseModel):
    """Outcome of the bounded retry phase"""
    rounds_run: int = 0
    remaining_before: int = 0
    remaining_after: int = 0
    stop_reason: str = "not_started"


class RunReport(BaseModel):
    """Final report of one crawler run"""
    stats: RunStats
    started_at: datetime
    finished_at: datetime
    dispatch_rounds: int = 0
    retry: Optional[RetrySummary] = None
    credentials_exhausted: bool = False
    shutdown_reason: str = "completed"

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
