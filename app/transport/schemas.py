# app/transport/schemas.py
from pydantic import BaseModel, Field

from app.core.engine.domain import TriggerType


class EventIn(BaseModel):
    type: TriggerType
    subscriber_id: str = Field(min_length=1, max_length=128)
    username: str = Field(default="", max_length=128)
    target_account_id: str = Field(min_length=1, max_length=128)
    text: str | None = Field(default=None, max_length=4000)
    profile_pic: str | None = Field(default=None, max_length=2048)


class EventOut(BaseModel):
    accepted: bool = True
    started: bool


class PollingStatusOut(BaseModel):
    is_polling: bool
    processed_messages: int
    paused_conversations: int


class SessionIn(BaseModel):
    token: str | None = Field(default=None, max_length=4096)
