"""
Chat routes: import an export, build the partner persona, and chat with it.
"""
import logging
import os

from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File, Form
from sqlalchemy.orm import Session

from app.core.clock import SystemClock, get_clock
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession, ImportedChat
from app.schemas.chat import (
    ChatSessionCreated,
    ChatSessionState,
    ParseResponse,
    SendMessageRequest,
    SendMessageResponse,
    SuggestionsRequest,
    SuggestionsResponse,
)
from app.services import llm_client
from app.services.chat_context import (
    FALLBACK_STYLE,
    FALLBACK_SUMMARY,
    build_memory_inputs,
    build_recent_context,
    parse_recent_context,
)
from app.services.chat_parser import ParseResult, parse_chat_export
from app.services.entitlements import increment_usage, release_usage
from app.services.user_data import delete_user_data

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_EXPORT_SIZE = int(os.getenv("MAX_EXPORT_SIZE", str(20 * 1024 * 1024)))
CHAT_HISTORY_TURNS = 20


async def _read_export(file: UploadFile) -> ParseResult:
    # Never pull more than one byte past the limit into memory
    too_large = file.size is not None and file.size > MAX_EXPORT_SIZE
    content = b"" if too_large else await file.read(MAX_EXPORT_SIZE + 1)
    if too_large or len(content) > MAX_EXPORT_SIZE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File exceeds maximum size of {MAX_EXPORT_SIZE // (1024 * 1024)}MB",
        )

    result = parse_chat_export(content.decode("utf-8-sig", errors="replace"))
    if result.is_empty:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not parse chat. Please upload a WhatsApp .txt export.",
        )
    return result


def _get_session(db: Session, user_id: int) -> ChatSession:
    session = db.query(ChatSession).filter(ChatSession.user_id == user_id).first()
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No chat imported yet",
        )
    return session


@router.post("/parse", response_model=ParseResponse)
async def parse_export(
    file: UploadFile = File(...),
    user_id: int = Depends(get_current_user_id),
):
    """Parse an export and return what the participant picker needs."""
    result = await _read_export(file)
    return ParseResponse(
        participants=result.participants,
        preview=result.preview,
        message_count=len(result.messages),
    )


@router.post("/session", response_model=ChatSessionCreated)
async def create_session(
    file: UploadFile = File(...),
    me_name: str = Form(...),
    other_name: str = Form(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """
    Import a chat and replace the user's current session with it.

    `me_name` is the uploader, `other_name` the participant the model will
    play. If memory synthesis fails the session is still created with a
    generic persona.
    """
    result = await _read_export(file)
    me_name, other_name = me_name.strip(), other_name.strip()
    if me_name == other_name or me_name not in result.participants or other_name not in result.participants:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Pick two different participants from the chat",
        )

    inputs = build_memory_inputs(result.messages, me_name, other_name)
    memory_fallback = False
    try:
        memory = await llm_client.build_memory(
            inputs["sample"], inputs["my_texts"], inputs["partner_texts"], me_name, other_name
        )
    except llm_client.LLMError as e:
        logger.warning("[LLM] memory synthesis failed for user %s, using fallback: %s", user_id, e)
        memory = {"summary": "", "partner_style": "", "style_profile": ""}
    if not memory["summary"] or not memory["partner_style"]:
        memory_fallback = True

    now = clock.now()
    try:
        for model in (ChatMessage, ImportedChat, ChatSession):
            db.query(model).filter(model.user_id == user_id).delete(synchronize_session=False)

        session = ChatSession(
            user_id=user_id,
            partner_name=other_name,
            me_name=me_name,
            memory_summary=memory["summary"] or FALLBACK_SUMMARY,
            partner_style=memory["partner_style"] or FALLBACK_STYLE,
            style_profile=memory["style_profile"],
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        db.flush()
        db.add(ImportedChat(
            user_id=user_id,
            session_id=session.id,
            recent_context=build_recent_context(result.messages, me_name, other_name),
            created_at=now,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(session)
    logger.info("Chat session %s created for user %s (%d messages)", session.id, user_id, len(result.messages))
    return {
        "session": session,
        "message_count": len(result.messages),
        "memory_fallback": memory_fallback,
    }


@router.get("/session", response_model=ChatSessionState)
def get_session(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    session = db.query(ChatSession).filter(ChatSession.user_id == user_id).first()
    if not session:
        return ChatSessionState()

    imported = db.query(ImportedChat).filter(ImportedChat.user_id == user_id).first()
    messages = db.query(ChatMessage).filter(
        ChatMessage.session_id == session.id
    ).order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc()).all()

    return {
        "session": session,
        "recent_context": imported.recent_context if imported else "",
        "messages": messages,
    }


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """Send a message to the partner persona. Counts against the daily quota."""
    text = request.message.strip()
    if not text:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message cannot be empty",
        )

    session = _get_session(db, user_id)
    now = clock.now()

    usage = increment_usage(db, user_id, now)
    if not usage.accepted:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": f"You've used all {usage.daily_limit} free messages for today. Upgrade to Pro for unlimited messages.",
                "upgrade_required": True,
                "messages_sent_today": usage.new_count,
                "daily_limit": usage.daily_limit,
            },
        )

    # From here on the send is counted; any failure before both messages are
    # stored gives the slot back.
    try:
        history = db.query(ChatMessage).filter(
            ChatMessage.session_id == session.id
        ).order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(CHAT_HISTORY_TURNS).all()
        imported = db.query(ImportedChat).filter(ImportedChat.user_id == user_id).first()

        reply = await llm_client.generate_reply(
            message=text,
            chat_history=[{"role": m.role, "content": m.content} for m in reversed(history)],
            recent_context=imported.recent_context if imported else "",
            memory_summary=session.memory_summary,
            partner_style=session.partner_style,
            me_name=session.me_name,
            other_name=session.partner_name,
            timezone=request.timezone,
            now=now,
        )

        user_message = ChatMessage(session_id=session.id, user_id=user_id, role="user", content=text, created_at=now)
        assistant_message = ChatMessage(session_id=session.id, user_id=user_id, role="assistant", content=reply, created_at=now)
        db.add_all([user_message, assistant_message])
        db.commit()
    except llm_client.LLMError as e:
        db.rollback()
        release_usage(db, user_id, now)
        logger.warning("[LLM] reply failed for user %s, send not counted: %s", user_id, e)
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        db.rollback()
        release_usage(db, user_id, now)
        raise

    db.refresh(user_message)
    db.refresh(assistant_message)

    return {
        "reply": reply,
        "user_message": user_message,
        "assistant_message": assistant_message,
        "messages_sent_today": usage.new_count,
        "daily_limit": usage.daily_limit,
    }


@router.post("/suggestions", response_model=SuggestionsResponse)
async def get_suggestions(
    request: SuggestionsRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Quick replies to the partner's latest message. Empty when none can be produced."""
    session = _get_session(db, user_id)

    last_message = (request.last_message or "").strip()
    if not last_message:
        latest = db.query(ChatMessage).filter(
            ChatMessage.session_id == session.id,
            ChatMessage.role == "assistant",
        ).order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).first()
        if latest:
            last_message = latest.content
    if not last_message:
        imported = db.query(ImportedChat).filter(ImportedChat.user_id == user_id).first()
        partner_lines = [
            entry["text"] for entry in parse_recent_context(imported.recent_context if imported else "")
            if entry["sender"] == session.partner_name
        ]
        last_message = partner_lines[-1] if partner_lines else ""
    if not last_message:
        return SuggestionsResponse(replies=[])

    replies = await llm_client.suggest_replies(
        last_message,
        session.memory_summary,
        session.style_profile or FALLBACK_STYLE,
        session.me_name,
        session.partner_name,
    )
    return SuggestionsResponse(replies=replies)


@router.delete("/data")
def delete_my_data(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Delete the user's chats, usage and subscription."""
    deleted = delete_user_data(db, user_id)
    return {"success": True, "deleted": deleted}
