import abc
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_email_gateway.emails.models import Email, SearchCriteria, SendRequest


class EmailHandler(abc.ABC):
    @abc.abstractmethod
    async def list_mailboxes(self) -> list[str]:
        """
        List the names of all mailboxes (folders) of the account
        """

    @abc.abstractmethod
    async def search_emails(self, criteria: "SearchCriteria") -> list["Email"]:
        """
        Search a folder and return the most recent matches, newest first
        """

    @abc.abstractmethod
    async def get_email(self, email_id: int, folder: str = "INBOX", include_attachments: bool = False) -> "Email":
        """
        Get one email by its sequence number in the given folder
        """

    @abc.abstractmethod
    async def send_email(self, request: "SendRequest") -> None:
        """
        Send a new email
        """

    @abc.abstractmethod
    async def reply_to_email(
        self,
        email_id: int,
        body: str,
        folder: str = "INBOX",
        reply_all: bool = False,
        is_html: bool = False,
    ) -> None:
        """
        Reply to an email, threading the reply onto the original.

        Args:
            email_id: Sequence number of the original email in ``folder``.
            body: The reply text.
            folder: The folder holding the original (default: "INBOX").
            reply_all: Copy every To and Cc recipient of the original.
            is_html: Send ``body`` as HTML instead of plain text.
        """

    @abc.abstractmethod
    async def forward_email(self, email_id: int, to: list[str], folder: str = "INBOX", message: str = "") -> None:
        """
        Forward an email, with its attachments, to new recipients.

        Args:
            email_id: Sequence number of the original email in ``folder``.
            to: Recipients of the forward.
            folder: The folder holding the original (default: "INBOX").
            message: Optional note placed above the forwarded content.
        """

    @abc.abstractmethod
    async def mark_as_read(self, email_ids: list[int], folder: str = "INBOX") -> None:
        """
        Set the \\Seen flag on emails
        """

    @abc.abstractmethod
    async def mark_as_unread(self, email_ids: list[int], folder: str = "INBOX") -> None:
        """
        Clear the \\Seen flag on emails
        """

    @abc.abstractmethod
    async def move_email(self, email_id: int, to_folder: str, from_folder: str = "INBOX") -> None:
        """
        Move an email to another folder
        """

    @abc.abstractmethod
    async def delete_email(self, email_id: int, folder: str = "INBOX", permanent: bool = False) -> None:
        """
        Delete an email. With ``permanent`` the folder is expunged, which also
        removes any other message in it already flagged as deleted.
        """
