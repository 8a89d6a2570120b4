"""Request bodies for the public and admin routes.

Bodies only bound sizes; the admission pipeline owns field semantics so the
same rules apply to HTTP and programmatic callers.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from jengahacks.abuse.config import Dimension


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    whatsapp_number: Optional[str] = Field(None, max_length=32)
    linkedin_url: Optional[str] = Field(None, max_length=2048)
    resume_path: Optional[str] = Field(None, max_length=512)
    captcha_token: Optional[str] = Field(None, max_length=4096)


class VerifyCaptchaRequest(BaseModel):
    token: Optional[str] = None


class RegistrationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(None, max_length=200)
    whatsapp_number: Optional[str] = Field(None, max_length=32)
    linkedin_url: Optional[str] = Field(None, max_length=2048)
    resume_path: Optional[str] = Field(None, max_length=512)


class BlockRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)
    dimension: Dimension
    reason: str = Field(..., min_length=1, max_length=255)
    blocked_by: str = Field("admin", min_length=1, max_length=64)
    ttl_seconds: Optional[int] = Field(None, ge=1)


class EscalateRequest(BaseModel):
    threshold: Optional[int] = Field(None, ge=1)
    lookback_hours: Optional[int] = Field(None, ge=1)


class DetectPatternsRequest(BaseModel):
    lookback_hours: Optional[int] = Field(None, ge=1)
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class AlertCheckRequest(BaseModel):
    repeated_threshold: Optional[int] = Field(None, ge=1)
    repeated_window_hours: Optional[int] = Field(None, ge=1)
    high_rate_threshold: Optional[int] = Field(None, ge=1)
    high_rate_window_minutes: Optional[int] = Field(None, ge=1)


class ResolveAlertRequest(BaseModel):
    resolved_by: str = Field("admin", min_length=1, max_length=64)


__all__ = [
    "AlertCheckRequest",
    "BlockRequest",
    "DetectPatternsRequest",
    "EscalateRequest",
    "RegisterRequest",
    "RegistrationPatch",
    "ResolveAlertRequest",
    "VerifyCaptchaRequest",
]
