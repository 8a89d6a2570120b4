"""reCAPTCHA token verification.

The token is an upstream signal consumed before admission; the verifier
keeps no state of its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from jengahacks.errors import InternalError, ValidationError
from jengahacks.shared.log_colors import LogColors

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 2000
DEFAULT_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


@dataclass
class CaptchaResult:
    success: bool
    score: Optional[float] = None
    hostname: Optional[str] = None
    challenge_ts: Optional[str] = None
    error_codes: tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "score": self.score,
            "hostname": self.hostname,
            "challenge_ts": self.challenge_ts,
        }


class CaptchaVerifier:
    def __init__(
        self,
        secret_key: Optional[str],
        *,
        verify_url: str = DEFAULT_VERIFY_URL,
        min_score: float = 0.5,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.min_score = min_score
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, data: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.verify_url, data=data)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(self.verify_url, data=data)

    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> CaptchaResult:
        if not self.secret_key:
            logger.error(f"{LogColors.NETWORK_LABEL} captcha_misconfigured: secret key not set")
            raise InternalError("reCAPTCHA secret key not configured")
        if not token or not isinstance(token, str):
            raise ValidationError("CAPTCHA token is required", field="captcha_token")
        if len(token) > MAX_TOKEN_LENGTH:
            raise ValidationError("Invalid CAPTCHA token format", field="captcha_token")

        data = {"secret": self.secret_key, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            resp = await self._post(data)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                f"{LogColors.NETWORK_LABEL} captcha_upstream_error: status={exc.response.status_code}"
            )
            raise InternalError("captcha verification failed") from exc
        except httpx.RequestError as exc:
            logger.error(f"{LogColors.NETWORK_LABEL} captcha_unreachable: {type(exc).__name__}: {exc}")
            raise InternalError("captcha verification failed") from exc
        except ValueError as exc:
            logger.error(f"{LogColors.NETWORK_LABEL} captcha_bad_response: {exc}")
            raise InternalError("captcha verification failed") from exc

        score = body.get("score")
        return CaptchaResult(
            success=bool(body.get("success")),
            score=float(score) if score is not None else None,
            hostname=body.get("hostname"),
            challenge_ts=body.get("challenge_ts"),
            error_codes=tuple(body.get("error-codes") or ()),
        )

    def passed(self, result: CaptchaResult) -> bool:
        """Success, and for v3 tokens a score at or above ``min_score``."""
        if not result.success:
            return False
        return result.score is None or result.score >= self.min_score


__all__ = ["CaptchaResult", "CaptchaVerifier"]
