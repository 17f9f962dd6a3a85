import base64
from datetime import datetime

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field, field_serializer

DEFAULT_FOLDER = "INBOX"
MAX_SEARCH_RESULTS = 50


class Attachment(BaseModel):
    """Attachment decoded from a fetched message"""

    filename: str
    content_type: str
    size: int
    data: bytes = Field(default=b"", repr=False)

    @field_serializer("data", when_used="json")
    def _data_as_base64(self, data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")


class Email(BaseModel):
    """Normalized email as returned by search_emails and get_email"""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: int  # Sequence number, only valid within the mailbox it was fetched from
    uid: int | None = None
    message_id: str = ""
    from_: list[str] = Field(default_factory=list, alias="from")
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = ""
    date: datetime | None = None  # None when the message carries no usable Date header
    text_body: str | None = None
    html_body: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    size: int = 0


class RawMessage(BaseModel):
    """One message as returned by FETCH, before MIME decoding"""

    seq: int
    uid: int | None = None
    size: int = 0
    flags: list[str] = Field(default_factory=list)
    body: bytes = Field(default=b"", repr=False)


class SearchCriteria(BaseModel):
    """Filters accepted by search_emails"""

    from_address: str | None = None
    to_address: str | None = None
    subject: str | None = None
    since: datetime | None = None
    before: datetime | None = None
    unseen: bool = False
    seen: bool = False
    folder: str = DEFAULT_FOLDER
    limit: int = MAX_SEARCH_RESULTS

    @property
    def effective_limit(self) -> int:
        """Limit clamped to [1, 50]; zero or negative means the default."""
        if self.limit <= 0 or self.limit > MAX_SEARCH_RESULTS:
            return MAX_SEARCH_RESULTS
        return self.limit


class AttachmentData(BaseModel):
    """Attachment supplied by the caller of send_email (base64 on the wire)"""

    filename: str
    data: Base64Bytes


class SendRequest(BaseModel):
    """Outbound message built from send_email arguments"""

    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    body: str
    is_html: bool = False
    markdown: bool = False  # Render body from Markdown to HTML before sending
    attachments: list[AttachmentData] = Field(default_factory=list)
