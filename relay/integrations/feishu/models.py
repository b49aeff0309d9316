"""Feishu integration models for the relay."""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_ALIAS = "Anonymous"


class MessageSubmission(BaseModel):
    """Client submission accepted by POST /sendMessage."""

    alias: str = DEFAULT_ALIAS
    message: str
    video_id: Optional[str] = None
    link: Optional[str] = None
    reply_to: Optional[str] = None
    queue: Optional[str] = None

    @field_validator("alias", mode="before")
    @classmethod
    def default_blank_alias(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_ALIAS
        return value

    @field_validator("message")
    @classmethod
    def require_message(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message is required")
        return value

    def to_text(self) -> str:
        """Render the submission as the text body posted to the chat.

        Returns:
            str: e.g. ``"alice → @bob: hi\\nLink: http://x"``
        """
        header = self.alias
        if self.reply_to and self.reply_to.strip():
            header += f" → @{self.reply_to}"

        text = f"{header}: {self.message}"
        if self.link:
            text += f"\nLink: {self.link}"
        if self.video_id:
            text += f"\nVideo ID: {self.video_id}"
        if self.queue and self.queue.strip():
            text += f"\nQueue: {self.queue}"
        return text


class TenantAccessToken(BaseModel):
    """Response of the internal tenant access token exchange."""

    code: int = 0
    msg: str = ""
    tenant_access_token: str = Field(min_length=1)
    expire: int = Field(gt=0)


class OutboundMessage(BaseModel):
    """Payload for the message/v3/send endpoint."""

    open_chat_id: str
    msg_type: Literal["text", "image"]
    content: Dict[str, str]

    @classmethod
    def text(cls, chat_id: str, text: str) -> "OutboundMessage":
        return cls(open_chat_id=chat_id, msg_type="text", content={"text": text})

    @classmethod
    def image(cls, chat_id: str, image_key: str) -> "OutboundMessage":
        return cls(open_chat_id=chat_id, msg_type="image", content={"image_key": image_key})
