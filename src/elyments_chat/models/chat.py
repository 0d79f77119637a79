"""
Directory models — chat listings and the recipient index.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ChatSummary(BaseModel):
    id: str
    address: str
    is_group: bool = False
    title: str = ""
    last_message: Optional[str] = None


class RecipientEntry(BaseModel):
    address: str
    title: str
    is_group: bool
    last_indexed_at: datetime


class ResolvedRecipient(BaseModel):
    address: str
    is_group: bool
    title: str
