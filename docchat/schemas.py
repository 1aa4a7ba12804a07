"""Request bodies validated with Pydantic."""
import re
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
STRONG_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]).{8,}$"
)


class MessageType(str, Enum):
    USER = "user"
    AI = "ai"
    ERROR = "error"
    PDF = "pdf"
    URL = "url"


class ChatMessage(BaseModel):
    """A message as stored in a conversation."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    type: MessageType
    content: str = ""
    file_name: str = Field(default="", alias="fileName")
    url: str = ""
    timestamp: datetime

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "fileName": self.file_name,
            "url": self.url,
            "timestamp": self.timestamp.isoformat(),
        }


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: str = Field(..., max_length=254)
    password: str

    @field_validator("username")
    @classmethod
    def strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Username is required")
        return value

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("password")
    @classmethod
    def check_password_strength(cls, value: str) -> str:
        if not STRONG_PASSWORD_PATTERN.match(value):
            raise ValueError(
                "Password must be at least 8 characters long and include uppercase, "
                "lowercase, number, and special character."
            )
        return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class SaveConversationRequest(BaseModel):
    id: str = Field(..., min_length=1)
    title: Optional[str] = None
    messages: List[ChatMessage]


class TitleUpdateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class AddMessageRequest(BaseModel):
    message: ChatMessage


class QueryRequest(BaseModel):
    message: str = ""
    conversation_id: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def strip_message(cls, value):
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value


class LoadDataRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def check_scheme(cls, value: str) -> str:
        value = value.strip()
        if not re.match(r"^https?://[^\s/]+", value):
            raise ValueError("URL must start with http:// or https://")
        return value
