"""Public registration routes."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from jengahacks.errors import ValidationError
from jengahacks.registration.models import RegistrationRequest
from jengahacks.services import Services

from .schemas import RegisterRequest, RegistrationPatch, VerifyCaptchaRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["registration"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("/register")
async def register(body: RegisterRequest, request: Request) -> Dict[str, Any]:
    """Admit one registration.

    Rejections surface as ``{success: false, error, code}`` through the
    app's exception handlers.
    """
    services = get_services(request)
    state = request.state

    if services.settings.captcha.required:
        result = await services.captcha.verify(body.captcha_token, state.client_ip)
        if not services.captcha.passed(result):
            logger.info({"register": "captcha_rejected", "score": result.score})
            raise ValidationError("CAPTCHA verification failed", field="captcha_token")

    admission = await services.admission.admit(
        RegistrationRequest(
            full_name=body.full_name,
            email=body.email,
            whatsapp_number=body.whatsapp_number,
            linkedin_url=body.linkedin_url,
            resume_path=body.resume_path,
            ip_address=state.client_ip,
            client_fingerprint=state.client_fingerprint,
            user_agent=state.user_agent,
            request_path=request.url.path,
            request_id=state.request_id,
        )
    )
    if admission.error is not None:
        raise admission.error
    return admission.to_payload()


@router.post("/verify-captcha")
async def verify_captcha(body: VerifyCaptchaRequest, request: Request) -> Dict[str, Any]:
    services = get_services(request)
    result = await services.captcha.verify(body.token, request.state.client_ip)
    return result.to_payload()


@router.get("/registrations/{access_token}")
async def get_registration(access_token: str, request: Request) -> Dict[str, Any]:
    registration = await get_services(request).manager.get(access_token)
    return {"success": True, "data": registration.public_view()}


@router.patch("/registrations/{access_token}")
async def update_registration(access_token: str, body: RegistrationPatch, request: Request) -> Dict[str, Any]:
    registration = await get_services(request).manager.update(access_token, **body.model_dump())
    return {"success": True, "data": registration.public_view()}


@router.delete("/registrations/{access_token}")
async def cancel_registration(access_token: str, request: Request) -> Dict[str, Any]:
    await get_services(request).manager.cancel(access_token)
    return {"success": True}


@router.get("/health", include_in_schema=False)
async def health() -> Dict[str, str]:
    return {"status": "healthy"}


__all__ = ["get_services", "router"]
