from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from jobgate.rl.keys import parse_limits


class CounterDecision(BaseModel):
    admitted: bool
    count: int
    limit: int
    key: str


class ReleaseToken(BaseModel):
    job_class: str
    identifier: str
    concurrency_key: Optional[str] = None


class AdmissionDecision(BaseModel):
    admitted: bool
    job_class: str
    identifier: str
    token: Optional[ReleaseToken] = None
    # descriptor of the first limit that refused the job
    refused_by: Optional[str] = None


# HTTP data-plane models
class AdmitRequest(BaseModel):
    job_class: str
    args: List[Any] = Field(default_factory=list)
    limits: Dict[str, int]
    identifier: Optional[str] = None
    queue: str = "default"

    @field_validator("limits")
    @classmethod
    def _validate_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        parse_limits(v)
        return v


class AdmitResponse(BaseModel):
    admitted: bool
    token: Optional[str] = None
    refused_by: Optional[str] = None
    deferred_to: Optional[str] = None


class ReleaseRequest(BaseModel):
    token: str


class PeekResponse(BaseModel):
    would_defer: bool
