"""Endpoints do inbox de WhatsApp.

O JWT do usuário é repassado ao Supabase em todas as leituras e escritas,
então o RLS limita tudo à organização do usuário.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from app.core.config import settings
from app.core.logging import get_logger
from app.core.security import jwt_claims
from app.repositories.inbox import InboxRepository, SupabaseError, SupabaseNetworkError
from app.services.edge_functions import EdgeFunctionsClient

from . import schemas
from .cooldown import SendCooldown
from .deps import (
    ComposeSlots,
    get_compose_slots,
    get_cooldown,
    get_functions,
    get_repository,
    require_token,
    user_key,
)
from .media import MediaError, PendingMedia, audio_from_data_url, image_from_file
from .service import (
    IN_FLIGHT_NOTICE,
    UNEXPECTED_FAILURE,
    Notice,
    OutboundSendOrchestrator,
    SendOutcome,
)
from .stores import ConversationStore, MessageStore

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

logger = get_logger("app.channels.whatsapp")

_NOTICE_STATUS = {
    "cooldown": 429,
    "in_flight": 409,
    "invalid_conversation": 400,
    "upload_url_failed": 502,
    "upload_failed": 502,
    "send_rejected": 502,
    "network": 502,
    "unexpected": 500,
}


def _upstream_error(exc: SupabaseError) -> HTTPException:
    if isinstance(exc, SupabaseNetworkError):
        return HTTPException(status_code=502, detail="Erro ao conectar ao Supabase")
    if exc.status_code in (401, 403, 404):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


async def _load_conversation(
    repository: InboxRepository, token: str, conversation_id: str
) -> schemas.Conversation:
    try:
        row = await repository.fetch_conversation(token=token, conversation_id=conversation_id)
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Conversa não encontrada")
    return schemas.Conversation.model_validate(row)


def _outcome_to_response(outcome: SendOutcome) -> schemas.SendResponse:
    if outcome.status == "skipped":
        raise HTTPException(
            status_code=400, detail={"code": "empty_message", "message": "Mensagem vazia"}
        )
    if outcome.status == "rejected":
        notice = outcome.notice or Notice(code="unexpected", message=UNEXPECTED_FAILURE)
        headers = None
        if notice.code == "cooldown":
            retry_after_ms = outcome.extra.get("retry_after_ms", settings.send_cooldown_ms)
            headers = {"Retry-After": str(max(1, -(-int(retry_after_ms) // 1000)))}
        raise HTTPException(
            status_code=_NOTICE_STATUS.get(notice.code, 502),
            detail={"code": notice.code, "message": notice.message},
            headers=headers,
        )
    return schemas.SendResponse(
        message=outcome.message, provider_message_id=outcome.provider_message_id
    )


async def _send(
    conversation: schemas.Conversation,
    *,
    token: str,
    functions: EdgeFunctionsClient,
    cooldown: SendCooldown,
    slots: ComposeSlots,
    text: str | None,
    media: PendingMedia | None = None,
) -> schemas.SendResponse:
    if not conversation.organization_id:
        raise HTTPException(status_code=400, detail="Conversa sem organização vinculada")

    key = (user_key(token), conversation.id)
    slot = slots.open(key)
    if slot is None:
        raise HTTPException(
            status_code=409, detail={"code": "in_flight", "message": IN_FLIGHT_NOTICE}
        )
    slot.text = text or ""
    slot.pending_media = media

    orchestrator = OutboundSendOrchestrator(
        functions=functions,
        cooldown=cooldown,
        token=token,
        organization_id=conversation.organization_id,
    )
    try:
        outcome = await orchestrator.handle_send(conversation, slot)
    finally:
        slots.release(key, slot)
    return _outcome_to_response(outcome)


@router.get(
    "/instances",
    response_model=list[schemas.MessagingInstance],
    summary="Instâncias conectadas visíveis para o usuário",
)
async def list_instances(
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
) -> list[schemas.MessagingInstance]:
    user_id = jwt_claims(token).get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="invalid_token")
    try:
        rows = await repository.list_instances(token=token, user_id=str(user_id))
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    return [schemas.MessagingInstance.model_validate(row) for row in rows]


@router.get(
    "/conversations",
    response_model=schemas.ConversationList,
    summary="Conversas ordenadas pela última atividade",
)
async def list_conversations(
    organization_id: str | None = Query(default=None),
    instance_id: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=120),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
) -> schemas.ConversationList:
    store = ConversationStore(
        repository,
        token=token,
        organization_id=organization_id,
        instance_id=instance_id,
        limit=limit,
    )
    try:
        await store.refresh()
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    items = store.search(search)
    if unread_only:
        items = [conv for conv in items if conv.unread_count > 0]
    return schemas.ConversationList(items=items, total_unread=store.total_unread())


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.MessageList,
    summary="Histórico da conversa em ordem cronológica",
)
async def list_messages(
    conversation_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
) -> schemas.MessageList:
    store = MessageStore(repository, token=token, conversation_id=conversation_id, limit=limit)
    try:
        items = await store.refresh()
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    return schemas.MessageList(conversation_id=conversation_id, items=items)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.SendResponse,
    summary="Envia uma mensagem de texto",
)
async def send_text_message(
    conversation_id: str,
    payload: schemas.TextSendRequest,
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
    functions: EdgeFunctionsClient = Depends(get_functions),
    cooldown: SendCooldown = Depends(get_cooldown),
    slots: ComposeSlots = Depends(get_compose_slots),
) -> schemas.SendResponse:
    conversation = await _load_conversation(repository, token, conversation_id)
    return await _send(
        conversation,
        token=token,
        functions=functions,
        cooldown=cooldown,
        slots=slots,
        text=payload.text,
    )


@router.post(
    "/conversations/{conversation_id}/media/image",
    response_model=schemas.SendResponse,
    summary="Envia uma imagem (multipart) com legenda opcional",
)
async def send_image_message(
    conversation_id: str,
    file: UploadFile = File(...),
    caption: str | None = Form(default=None, max_length=1024),
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
    functions: EdgeFunctionsClient = Depends(get_functions),
    cooldown: SendCooldown = Depends(get_cooldown),
    slots: ComposeSlots = Depends(get_compose_slots),
) -> schemas.SendResponse:
    data = await file.read()
    try:
        media = image_from_file(
            data, file.content_type, filename=file.filename, max_bytes=settings.media_max_bytes
        )
    except MediaError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "invalid_media", "message": str(exc)}
        ) from exc
    conversation = await _load_conversation(repository, token, conversation_id)
    return await _send(
        conversation,
        token=token,
        functions=functions,
        cooldown=cooldown,
        slots=slots,
        text=caption,
        media=media,
    )


@router.post(
    "/conversations/{conversation_id}/media/audio",
    response_model=schemas.SendResponse,
    summary="Envia um áudio gravado no navegador (data URL base64)",
)
async def send_audio_message(
    conversation_id: str,
    payload: schemas.AudioSendRequest,
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
    functions: EdgeFunctionsClient = Depends(get_functions),
    cooldown: SendCooldown = Depends(get_cooldown),
    slots: ComposeSlots = Depends(get_compose_slots),
) -> schemas.SendResponse:
    try:
        media = audio_from_data_url(payload.data_url, max_bytes=settings.media_max_bytes)
    except MediaError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "invalid_media", "message": str(exc)}
        ) from exc
    conversation = await _load_conversation(repository, token, conversation_id)
    return await _send(
        conversation,
        token=token,
        functions=functions,
        cooldown=cooldown,
        slots=slots,
        text=payload.caption,
        media=media,
    )


@router.post("/conversations/{conversation_id}/read", summary="Zera o contador de não lidas")
async def mark_conversation_read(
    conversation_id: str,
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
) -> dict[str, bool]:
    try:
        await repository.mark_read(token=token, conversation_id=conversation_id)
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    return {"ok": True}


@router.put(
    "/conversations/{conversation_id}/lead",
    response_model=schemas.Conversation,
    summary="Vincula (ou desvincula, com null) um lead à conversa",
)
async def link_conversation_lead(
    conversation_id: str,
    payload: schemas.LeadLinkRequest,
    token: str = Depends(require_token),
    repository: InboxRepository = Depends(get_repository),
) -> schemas.Conversation:
    try:
        row = await repository.link_lead(
            token=token, conversation_id=conversation_id, lead_id=payload.lead_id
        )
    except SupabaseError as exc:
        raise _upstream_error(exc) from exc
    logger.info(
        "whatsapp.lead_linked" if payload.lead_id else "whatsapp.lead_unlinked",
        extra={"conversation_id": conversation_id, "lead_id": payload.lead_id},
    )
    return schemas.Conversation.model_validate(row)
