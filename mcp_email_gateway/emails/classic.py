from mcp_email_gateway.config import Settings
from mcp_email_gateway.emails import EmailHandler
from mcp_email_gateway.emails.composer import Composer
from mcp_email_gateway.emails.mailbox import MailboxSession
from mcp_email_gateway.emails.models import Email, SearchCriteria, SendRequest
from mcp_email_gateway.log import logger


class ClassicEmailHandler(EmailHandler):
    """IMAP for reading and organizing, SMTP for sending."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.mailbox = MailboxSession(settings.incoming)
        self.composer = Composer(settings.outgoing, sender=settings.sender)

    async def list_mailboxes(self) -> list[str]:
        return await self.mailbox.list_mailboxes()

    async def search_emails(self, criteria: SearchCriteria) -> list[Email]:
        return await self.mailbox.search(criteria)

    async def get_email(self, email_id: int, folder: str = "INBOX", include_attachments: bool = False) -> Email:
        return await self.mailbox.get(email_id, folder, include_attachments)

    async def send_email(self, request: SendRequest) -> None:
        await self.composer.send(request)

    async def reply_to_email(
        self,
        email_id: int,
        body: str,
        folder: str = "INBOX",
        reply_all: bool = False,
        is_html: bool = False,
    ) -> None:
        original = await self.mailbox.get(email_id, folder, include_attachments=False)
        logger.info(f"Replying to email {email_id} in {folder} (reply_all={reply_all})")
        await self.composer.reply(original, body, reply_all=reply_all, is_html=is_html)

    async def forward_email(self, email_id: int, to: list[str], folder: str = "INBOX", message: str = "") -> None:
        # Attachments travel with the forward, so they must be materialized here.
        original = await self.mailbox.get(email_id, folder, include_attachments=True)
        logger.info(f"Forwarding email {email_id} in {folder} with {len(original.attachments)} attachment(s)")
        await self.composer.forward(original, to, message)

    async def mark_as_read(self, email_ids: list[int], folder: str = "INBOX") -> None:
        await self.mailbox.mark_as_read(email_ids, folder)

    async def mark_as_unread(self, email_ids: list[int], folder: str = "INBOX") -> None:
        await self.mailbox.mark_as_unread(email_ids, folder)

    async def move_email(self, email_id: int, to_folder: str, from_folder: str = "INBOX") -> None:
        await self.mailbox.move(email_id, from_folder, to_folder)

    async def delete_email(self, email_id: int, folder: str = "INBOX", permanent: bool = False) -> None:
        await self.mailbox.delete(email_id, folder, permanent)

    async def close(self) -> None:
        await self.mailbox.close()
