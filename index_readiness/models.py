from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from index_readiness.errors import IndexBuildFailed, PollTimedOut


class IndexStatus(str, Enum):
    pending = "PENDING"
    building = "BUILDING"
    ready = "READY"
    failed = "FAILED"
    stale = "STALE"
    deleting = "DELETING"
    does_not_exist = "DOES_NOT_EXIST"
    unknown = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        return cls.unknown


class IndexStatusSnapshot(BaseModel):
    """One answer from a status lookup for a single index"""

    name: str = Field(min_length=1)
    queryable: bool = False
    status: IndexStatus = IndexStatus.unknown
    error_detail: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> IndexStatus:
        if value is None:
            return IndexStatus.unknown
        if isinstance(value, str):
            return IndexStatus(value.upper())
        return value

    @model_validator(mode="after")
    def _detail_only_when_failed(self) -> "IndexStatusSnapshot":
        # Atlas attaches messages to STALE and other states too
        if self.status != IndexStatus.failed:
            self.error_detail = None
        return self

    @classmethod
    def from_document(cls, document: dict) -> "IndexStatusSnapshot":
        """Builds a snapshot from a $listSearchIndexes document.

        Atlas only reports why a build failed inside ``statusDetail``, either
        per host or on the host's ``mainIndex``; the first message found wins.
        """
        error_detail = None
        for host_detail in document.get("statusDetail") or []:
            main_index = host_detail.get("mainIndex") or {}
            error_detail = main_index.get("message") or host_detail.get("message")
            if error_detail:
                break

        return cls(
            name=document["name"],
            queryable=bool(document.get("queryable", False)),
            status=document.get("status"),
            error_detail=error_detail or document.get("message"),
        )


class Ready(BaseModel):
    outcome: Literal["ready"] = "ready"
    index_name: str
    elapsed: float
    attempts: int

    def raise_for_outcome(self) -> None:
        return None


class Failed(BaseModel):
    outcome: Literal["failed"] = "failed"
    index_name: str
    detail: Optional[str] = None
    elapsed: float
    attempts: int

    def raise_for_outcome(self) -> None:
        raise IndexBuildFailed(self.index_name, self.detail)


class TimedOut(BaseModel):
    outcome: Literal["timed_out"] = "timed_out"
    index_name: str
    elapsed: float
    attempts: int

    def raise_for_outcome(self) -> None:
        raise PollTimedOut(self.index_name, self.elapsed)


PollOutcome = Union[Ready, Failed, TimedOut]


class PollingConfig(BaseModel):
    timeout: float = Field(default=300.0, gt=0)  # 5 minutes
    poll_interval: float = Field(default=5.0, gt=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=60.0, gt=0)
    jitter: bool = False

    @model_validator(mode="after")
    def _check_interval_cap(self) -> "PollingConfig":
        if self.max_interval < self.poll_interval:
            raise ValueError(
                f"max_interval ({self.max_interval}) must not be smaller than "
                f"poll_interval ({self.poll_interval})"
            )
        return self
