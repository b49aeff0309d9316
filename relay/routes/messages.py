# ==== MESSAGE RELAY ROUTES ==== #

"""
Message submission routes for the Feishu relay.

POST /sendMessage accepts either a multipart form (optionally carrying one
`image` file) or a JSON body, validates it and hands it to the RelayService.
"""

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile

from relay.errors import ValidationError
from relay.integrations.feishu.models import MessageSubmission
from relay.services.relay_service import RelayService


router = APIRouter(tags=["messages"])

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def get_relay_service(request: Request) -> RelayService:
    """Relay service created in the application lifespan."""
    return request.app.state.relay


def get_client_key(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.get("/", response_class=PlainTextResponse)
async def alive() -> str:
    return "Bot is alive!"


@router.post("/sendMessage")
async def send_message(
    request: Request,
    service: RelayService = Depends(get_relay_service),
) -> Dict[str, Any]:
    """
    Relay a client message (and optional image) to the Feishu chat.

    Returns:
        Dict[str, Any]: {"status": "queued"} for text-only submissions,
        {"status": "sent"} once text and image were delivered
    """
    fields, image = await _read_submission(request)

    try:
        submission = MessageSubmission.model_validate(fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(loc) for loc in first["loc"]) or None
        message = "Message is required" if field == "message" else first["msg"]
        raise ValidationError(message, field=field) from e

    result = await service.submit(submission, get_client_key(request), image)
    return result.to_response()


async def _read_submission(request: Request) -> Tuple[Dict[str, Any], Optional[UploadFile]]:
    content_type = request.headers.get("content-type", "")
    settings = request.app.state.settings
    max_bytes = settings.MAX_REQUEST_BODY_BYTES

    # Multipart bodies may also carry one attachment; reject before spooling
    declared_limit = max_bytes
    if content_type.startswith("multipart/form-data"):
        declared_limit += settings.MAX_UPLOAD_BYTES

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > declared_limit:
        raise ValidationError("Request body too large", http_status=413)

    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        fields: Dict[str, Any] = {}
        image: Optional[UploadFile] = None
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key != "image" or not value.filename:
                    continue
                if image is not None:
                    raise ValidationError("Only one image may be attached", field="image")
                image = value
            else:
                fields.setdefault(key, value)
        return fields, image

    body = await request.body()
    if len(body) > max_bytes:
        raise ValidationError("Request body too large", http_status=413)
    if not body:
        return {}, None

    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationError("Malformed JSON body") from e
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload, None
