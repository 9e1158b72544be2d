"""
MIME parsing of raw RFC822 messages into ParsedEmail
"""
import email
import email.utils
from datetime import datetime, timezone
from email.header import decode_header
from email.message import Message
from typing import Optional

import html2text

from models import EmailAttachment, ParsedEmail


def html_to_text(html: str) -> str:
    """Readable plain text for messages that only carry an HTML body"""
    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.ignore_emphasis = True
    converter.body_width = 0
    return converter.handle(html).strip()


def decode_mime_header(header_value) -> str:
    """Decode an RFC 2047 encoded header"""
    if header_value is None:
        return ""

    header_str = ""
    for part, encoding in decode_header(str(header_value)):
        if isinstance(part, bytes):
            try:
                part = part.decode(encoding or 'utf-8')
            except (LookupError, UnicodeDecodeError):
                part = part.decode('utf-8', errors='replace')
        header_str += part
    return header_str.strip()


def format_date(date_header: Optional[str], now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp, falling back to the current time"""
    parsed = None
    if date_header:
        try:
            parsed = email.utils.parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
    if parsed is None:
        parsed = now or datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def parse_email(raw: bytes) -> ParsedEmail:
    """Parse raw message bytes.

    The first inline text/plain and text/html parts become the bodies; every
    other leaf part is listed as an attachment in message order.
    """
    if not raw:
        raise ValueError("empty message")

    msg = email.message_from_bytes(raw)

    body_text = None
    body_html = None
    attachments = []

    for part in msg.walk():
        if part.is_multipart():
            continue

        content_type = part.get_content_type()
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        is_attachment = disposition == 'attachment' or filename is not None

        if content_type == 'text/plain' and not is_attachment and body_text is None:
            body_text = _decode_payload(part)
        elif content_type == 'text/html' and not is_attachment and body_html is None:
            body_html = _decode_payload(part)
        elif is_attachment or content_type not in ('text/plain', 'text/html'):
            attachments.append(EmailAttachment(
                filename=decode_mime_header(filename) or "unnamed",
                content_type=content_type,
            ))

    if not body_text and body_html:
        body_text = html_to_text(body_html)

    return ParsedEmail(
        subject=decode_mime_header(msg.get('Subject')) or "(No Subject)",
        sender=decode_mime_header(msg.get('From')) or "Unknown",
        to=decode_mime_header(msg.get('To')) or "Unknown",
        date=format_date(msg.get('Date')),
        text=body_text or None,
        html=body_html or None,
        attachments=attachments,
    )
