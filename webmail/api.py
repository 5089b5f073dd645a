"""HTTP API for the webmail gateway."""

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from webmail.auth import Session, require_user
from webmail.config import load_config
from webmail.errors import MailError
from webmail.service import Services, build_services
from webmail.smtp_client import OutgoingAttachment

logger = logging.getLogger(__name__)

ConversationStatus = Literal["inbox", "sent", "archived", "trash"]

router = APIRouter()


# Request models
class AttachmentModel(BaseModel):
    filename: str
    content: str  # base64
    content_type: str = Field("application/octet-stream", alias="contentType")

    @field_validator("content")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("attachment content must be base64 encoded")
        return value

    def to_attachment(self) -> OutgoingAttachment:
        return OutgoingAttachment(
            filename=self.filename,
            content=base64.b64decode(self.content),
            content_type=self.content_type,
        )


class SendEmailRequest(BaseModel):
    to: str
    subject: str = ""
    content: str = ""
    attachments: Optional[List[AttachmentModel]] = None
    html: bool = False


class SmtpConfigModel(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    secure: bool = True
    user: Optional[str] = None
    password: Optional[str] = None


class ImapConfigModel(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None


class EmailConfigRequest(BaseModel):
    smtp: SmtpConfigModel = Field(default_factory=SmtpConfigModel)
    imap: ImapConfigModel = Field(default_factory=ImapConfigModel)


class MoveRequest(BaseModel):
    ids: List[str] = Field(min_length=1)
    folder: ConversationStatus


class SyncRequest(BaseModel):
    folder: str = "inbox"


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# Folder pages (live IMAP)
# ============================================================================


@router.get("/emails/{folder}")
async def get_folder(
    folder: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    refresh: bool = False,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    result, cached = await services.mail.get_folder_page(
        user.user_id, folder, page=page, limit=limit, refresh=refresh
    )
    return {**result.to_dict(), "cached": cached}


@router.post("/emails/send")
async def send_email(
    body: SendEmailRequest,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    message_id = await services.mail.send_email(
        user.user_id,
        body.to,
        body.subject,
        body.content,
        attachments=[a.to_attachment() for a in body.attachments or []],
        html=body.html,
    )
    return {"success": True, "messageId": message_id}


@router.post("/emails/sync")
async def sync_emails(
    body: Optional[SyncRequest] = None,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    folder = body.folder if body else "inbox"
    stored = await services.mail.sync_folder(user.user_id, folder)
    return {"success": True, "stored": stored}


# ============================================================================
# Account configuration
# ============================================================================


@router.get("/user/email-config")
async def get_email_config(
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    config = await services.mail.get_email_config(user.user_id)
    return {"configured": config is not None, "config": config}


@router.put("/user/email-config")
async def update_email_config(
    body: EmailConfigRequest,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    config = await services.mail.update_email_config(user.user_id, body.model_dump())
    return {"success": True, "config": config}


# ============================================================================
# Stored conversations
# ============================================================================


@router.get("/conversations/{conversation_status}")
async def list_conversations(
    conversation_status: ConversationStatus,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    search: str = "",
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    limit = min(limit, services.config.pagination.conversations_max_limit)
    result = await services.conversations.list(
        user.user_id, conversation_status, page=page, limit=limit, search=search
    )
    return result.to_dict()


@router.get("/conversations/{conversation_status}/{conversation_id}")
async def get_conversation(
    conversation_status: ConversationStatus,
    conversation_id: str,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    conversation = await services.conversations.get(
        user.user_id, conversation_id, status=conversation_status
    )
    return {"success": True, "email": conversation.to_dict()}


@router.post("/conversations/move")
async def move_conversations(
    body: MoveRequest,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    if len(body.ids) == 1:
        await services.conversations.move(user.user_id, body.ids[0], body.folder)
        moved = 1
    else:
        moved = await services.conversations.bulk_move(user.user_id, body.ids, body.folder)
    return {"success": True, "moved": moved}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: Session = Depends(require_user),
    services: Services = Depends(get_services),
):
    await services.conversations.delete(user.user_id, conversation_id)
    return {"success": True}


@router.get("/health")
async def health():
    return {"service": "webmail", "health": "healthy"}


async def mail_error_handler(request: Request, exc: MailError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"error": str(exc.detail), "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        # Drop the leading "query"/"body"/"path" segment
        field = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return JSONResponse(
        {"error": "; ".join(problems) or "Invalid request", "code": "VALIDATION_ERROR"},
        status_code=422,
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unexpected error handling {request.method} {request.url.path}")
    return JSONResponse(
        {"error": "Internal server error", "code": "INTERNAL_ERROR"},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app.

    When ``services`` is None they are built from ``load_config()`` at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(load_config())
        try:
            yield
        finally:
            if owned:
                app.state.services.close()

    app = FastAPI(title="Webmail Gateway", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    app.add_exception_handler(MailError, mail_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    return app
