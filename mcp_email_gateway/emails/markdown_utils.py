"""Markdown rendering for outbound message bodies."""

import markdown as md

# Extensions safe for email clients (no CSS class dependencies)
EMAIL_SAFE_EXTENSIONS = ["tables", "fenced_code", "nl2br"]

# Minimal inline styles for consistent email rendering
EMAIL_BODY_STYLE = "font-family: Arial, Helvetica, sans-serif; line-height: 1.5; color: #222;"


def markdown_to_email_html(text: str, wrap_in_html: bool = True) -> str:
    """Convert markdown text to email-safe HTML.

    Args:
        text: Markdown-formatted text
        wrap_in_html: If True, wrap output in a minimal HTML document with inline styles

    Returns:
        HTML string suitable for email clients
    """
    html_content = md.markdown(
        text,
        extensions=EMAIL_SAFE_EXTENSIONS,
        extension_configs={"fenced_code": {"lang_prefix": ""}},
    )
    if not wrap_in_html:
        return html_content

    return (
        '<!DOCTYPE html>\n<html>\n<head><meta charset="utf-8"></head>\n'
        f'<body style="{EMAIL_BODY_STYLE}">\n{html_content}\n</body>\n</html>'
    )


def render_body(body: str, is_html: bool = False, markdown: bool = False) -> tuple[str, str]:
    """Return ``(content, subtype)`` for the text part of an outbound message.

    ``markdown`` takes precedence over ``is_html``: the body is rendered and sent as HTML.
    """
    if markdown:
        return markdown_to_email_html(body), "html"
    return body, "html" if is_html else "plain"
