from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime


class ParseResponse(BaseModel):
    participants: List[str]
    preview: List[str]
    message_count: int


class ChatSessionResponse(BaseModel):
    id: int
    partner_name: str
    me_name: str
    memory_summary: str
    partner_style: str
    style_profile: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChatMessageResponse(BaseModel):
    id: int
    role: str  # "user" | "assistant"
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChatSessionCreated(BaseModel):
    session: ChatSessionResponse
    message_count: int
    memory_fallback: bool = False  # True when memory synthesis failed and defaults were stored


class ChatSessionState(BaseModel):
    session: Optional[ChatSessionResponse] = None
    recent_context: str = ""
    messages: List[ChatMessageResponse] = []


class SendMessageRequest(BaseModel):
    message: str
    timezone: Optional[str] = None  # IANA name, e.g. "Asia/Kolkata"


class SendMessageResponse(BaseModel):
    reply: str
    user_message: ChatMessageResponse
    assistant_message: ChatMessageResponse
    messages_sent_today: int
    daily_limit: Optional[int] = None  # None = unlimited


class SuggestionsRequest(BaseModel):
    last_message: Optional[str] = None  # Defaults to the latest partner message


class SuggestionsResponse(BaseModel):
    replies: List[str]
