from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Annotated

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import AliasChoices, Field, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from mcp_email_gateway.emails.dispatcher import dispatch_handler
from mcp_email_gateway.emails.models import AttachmentData, Email, SearchCriteria, SendRequest
from mcp_email_gateway.errors import EmailError, ToolValidationError
from mcp_email_gateway.log import logger

mcp = FastMCP("email")


@contextmanager
def _tool_errors(action: str) -> Iterator[None]:
    """Report mail failures to the caller as tool errors instead of crashing the server."""
    try:
        yield
    except EmailError as e:
        logger.error(f"Failed to {action}: {e}")
        raise ToolError(f"Failed to {action}: {e}") from e


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


@mcp.tool(description="List all mailboxes (folders) of the email account.")
async def list_mailboxes() -> list[str]:
    handler = dispatch_handler()
    with _tool_errors("list mailboxes"):
        return await handler.list_mailboxes()


@mcp.tool(
    description="Search emails in a folder. Returns the most recent matches first (at most 50). "
    "The returned id is only valid within the folder it was found in."
)
async def search_emails(
    from_address: Annotated[
        str | None,
        Field(
            default=None,
            validation_alias=AliasChoices("from", "from_address"),
            description="Filter by sender address (substring).",
        ),
    ] = None,
    to: Annotated[str | None, Field(default=None, description="Filter by recipient address (substring).")] = None,
    subject: Annotated[str | None, Field(default=None, description="Filter by subject (substring).")] = None,
    since: Annotated[datetime | None, Field(default=None, description="Only emails on or after this date.")] = None,
    before: Annotated[datetime | None, Field(default=None, description="Only emails before this date.")] = None,
    unseen: Annotated[bool, Field(default=False, description="Only unread emails.")] = False,
    seen: Annotated[bool, Field(default=False, description="Only read emails.")] = False,
    folder: Annotated[str, Field(default="INBOX", description="The folder to search.")] = "INBOX",
    limit: Annotated[int, Field(default=50, description="Maximum number of emails to return (1-50).")] = 50,
) -> list[Email]:
    criteria = SearchCriteria(
        from_address=from_address,
        to_address=to,
        subject=subject,
        since=since,
        before=before,
        unseen=unseen,
        seen=seen,
        folder=folder,
        limit=limit,
    )
    handler = dispatch_handler()
    with _tool_errors("search emails"):
        return await handler.search_emails(criteria)


@mcp.tool(description="Get one email, including its text and HTML bodies, by id.")
async def get_email(
    id: Annotated[int, Field(description="The email id (sequence number) returned by search_emails.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the id belongs to.")] = "INBOX",
    include_attachments: Annotated[
        bool, Field(default=False, description="Include attachment content (base64).")
    ] = False,
) -> Email:
    handler = dispatch_handler()
    with _tool_errors("get email"):
        return await handler.get_email(id, folder, include_attachments)


@mcp.tool(description="Send a new email. Bcc recipients receive the email without being listed in its headers.")
async def send_email(
    to: Annotated[list[str], Field(description="A list of recipient email addresses.")],
    subject: Annotated[str, Field(description="The subject of the email.")],
    body: Annotated[str, Field(description="The body of the email.")],
    cc: Annotated[list[str] | None, Field(default=None, description="A list of CC email addresses.")] = None,
    bcc: Annotated[list[str] | None, Field(default=None, description="A list of BCC email addresses.")] = None,
    is_html: Annotated[
        bool, Field(default=False, description="Whether the body is HTML (True) or plain text (False).")
    ] = False,
    markdown: Annotated[
        bool, Field(default=False, description="Render the body from Markdown and send it as HTML.")
    ] = False,
    attachments: Annotated[
        list[AttachmentData] | None,
        Field(default=None, description="Files to attach, each with a filename and base64-encoded data."),
    ] = None,
) -> str:
    handler = dispatch_handler()
    with _tool_errors("send email"):
        try:
            request = SendRequest(
                to=to,
                cc=cc or [],
                bcc=bcc or [],
                subject=subject,
                body=body,
                is_html=is_html,
                markdown=markdown,
                attachments=attachments or [],
            )
        except ValidationError as e:
            raise ToolValidationError(str(e)) from e
        await handler.send_email(request)
    return "Email sent successfully"


@mcp.tool(description="Reply to an email. The reply is threaded onto the original.")
async def reply_to_email(
    email_id: Annotated[int, Field(description="The id of the email to reply to.")],
    body: Annotated[str, Field(description="The body of the reply.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the email is in.")] = "INBOX",
    reply_all: Annotated[
        bool, Field(default=False, description="Also reply to every To and Cc recipient of the original.")
    ] = False,
    is_html: Annotated[bool, Field(default=False, description="Whether the body is HTML.")] = False,
) -> str:
    handler = dispatch_handler()
    with _tool_errors("send reply"):
        await handler.reply_to_email(email_id, body, folder=folder, reply_all=reply_all, is_html=is_html)
    return "Reply sent successfully"


@mcp.tool(description="Forward an email, including its attachments, to new recipients.")
async def forward_email(
    email_id: Annotated[int, Field(description="The id of the email to forward.")],
    to: Annotated[list[str], Field(description="A list of recipient email addresses.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the email is in.")] = "INBOX",
    message: Annotated[
        str, Field(default="", description="Optional message placed above the forwarded email.")
    ] = "",
) -> str:
    handler = dispatch_handler()
    with _tool_errors("forward email"):
        await handler.forward_email(email_id, to, folder=folder, message=message)
    return "Email forwarded successfully"


@mcp.tool(description="Mark one or more emails as read.")
async def mark_as_read(
    email_ids: Annotated[list[int], Field(description="The ids of the emails to mark.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the emails are in.")] = "INBOX",
) -> str:
    handler = dispatch_handler()
    with _tool_errors("mark as read"):
        await handler.mark_as_read(email_ids, folder)
    return "Emails marked as read"


@mcp.tool(description="Mark one or more emails as unread.")
async def mark_as_unread(
    email_ids: Annotated[list[int], Field(description="The ids of the emails to mark.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the emails are in.")] = "INBOX",
) -> str:
    handler = dispatch_handler()
    with _tool_errors("mark as unread"):
        await handler.mark_as_unread(email_ids, folder)
    return "Emails marked as unread"


@mcp.tool(description="Move an email to another folder.")
async def move_email(
    email_id: Annotated[int, Field(description="The id of the email to move.")],
    to_folder: Annotated[str, Field(description="The destination folder.")],
    from_folder: Annotated[str, Field(default="INBOX", description="The folder the email is in.")] = "INBOX",
) -> str:
    handler = dispatch_handler()
    with _tool_errors("move email"):
        await handler.move_email(email_id, to_folder, from_folder)
    return f"Email moved from {from_folder} to {to_folder}"


@mcp.tool(
    description="Delete an email. With permanent=true the folder is expunged, which also removes any other "
    "email in it already marked as deleted."
)
async def delete_email(
    email_id: Annotated[int, Field(description="The id of the email to delete.")],
    folder: Annotated[str, Field(default="INBOX", description="The folder the email is in.")] = "INBOX",
    permanent: Annotated[
        bool, Field(default=False, description="Expunge immediately instead of only flagging as deleted.")
    ] = False,
) -> str:
    handler = dispatch_handler()
    with _tool_errors("delete email"):
        await handler.delete_email(email_id, folder, permanent)
    return "Email deleted successfully"
