"""Modelos das rotas do chatbot."""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class BotProcessRequest(BaseModel):
    seller_id: str
    contact_phone: str = Field(max_length=40)
    message_text: str = Field(max_length=4096)
    contact_name: Optional[str] = Field(default=None, max_length=200)
    message_type: Optional[str] = Field(default=None, max_length=30)
    metadata: Optional[Dict[str, Any]] = None


class BotInterceptRequest(BaseModel):
    seller_id: str = ""
    sender_phone: str = ""
    message_text: str = ""
    instance_name: Optional[str] = None
