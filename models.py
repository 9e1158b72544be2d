"""
Pydantic models for email data structure and response envelopes
"""
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field


class ImapConfig(BaseModel):
    user: str
    password: str = Field(repr=False)
    host: str
    port: int = 993
    use_tls: bool = True
    connect_timeout: float = 8.0
    auth_timeout: float = 4.0
    connection_timeout: float = 10.0
    command_timeout: float = 2.0
    read_timeout: float = 4.0
    close_timeout: float = 1.0
    max_message_bytes: int = 10 * 1024 * 1024
    mailbox: str = "INBOX"


class MailboxMetadata(BaseModel):
    name: str
    exists: int = 0
    uid_validity: Optional[int] = None


class EmailAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str = "unnamed"
    content_type: str = Field(default="application/octet-stream", alias="contentType")


class ParsedEmail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str = "(No Subject)"
    sender: str = Field(default="Unknown", alias="from")
    to: str = "Unknown"
    date: str
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: List[EmailAttachment] = []


class EmailsResponse(BaseModel):
    emails: List[ParsedEmail] = []
    count: Optional[int] = None
    message: Optional[str] = None

    def to_body(self) -> dict:
        """JSON body with camelCase keys and unset fields left out"""
        return self.model_dump(by_alias=True, exclude_none=True)


class ErrorResponse(BaseModel):
    message: str
    error: Optional[str] = None

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)


class RetrievalReport(BaseModel):
    requested: int = 0
    fetched: int = 0
    failed: int = 0
    timed_out: int = 0
    parsed: int = 0
    parse_failed: int = 0

    @property
    def dropped(self) -> int:
        return self.requested - self.parsed
