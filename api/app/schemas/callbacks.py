from typing import Literal

from pydantic import Field

from app.schemas.jobs import CamelModel


class CallbackFileIn(CamelModel):
    path: str | None = None
    type: str | None = None
    content: str | None = None


class JobCallbackIn(CamelModel):
    job_id: str = Field(min_length=1)
    type: Literal["progress", "complete", "error"]
    status: str | None = None
    progress: str | None = None
    step: int | None = Field(default=None, ge=0)
    total_steps: int | None = Field(default=None, ge=0)
    error: str | None = None
    files: list[CallbackFileIn] | None = None


class CallbackAckOut(CamelModel):
    success: bool = True
    type: str
    applied: bool
    status: str


class WebhookHealthOut(CamelModel):
    status: str = "healthy"
    endpoint: str = "job-callback"
