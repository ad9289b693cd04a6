"""Gmail adapter: message listing, MIME normalization and attachment download."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from privatezone.errors import FetchFailedError
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import (
    INLINE_PART_ID_PREFIX,
    AttachmentMeta,
    BearerApiClient,
    MessageProvider,
    NormalizedMessage,
    RecordError,
)

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
MAX_LIST_PAGE_SIZE = 500
MAX_MIME_DEPTH = 20

# Minimal cleanup applied to HTML bodies; tags are preserved.
_HTML_REPLACEMENTS = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
    ("%20", " "),
    ("%3A", ":"),
    ("%2F", "/"),
    ("%3F", "?"),
    ("%3D", "="),
    ("%26", "&"),
    # Last, so "&amp;lt;" decodes to the literal text "&lt;".
    ("&amp;", "&"),
)


# ---------------------------------------------------------------------------
# MIME helpers
# ---------------------------------------------------------------------------


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's base64url payloads, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid base64url payload") from exc


def clean_html_body(html_body: str) -> str:
    cleaned = html_body
    for entity, replacement in _HTML_REPLACEMENTS:
        cleaned = cleaned.replace(entity, replacement)
    return cleaned


def _header_map(headers: Any) -> dict[str, str]:
    """Case-insensitive header lookup; the first occurrence wins."""
    values: dict[str, str] = {}
    if not isinstance(headers, list):
        return values
    for header in headers:
        if not isinstance(header, dict):
            continue
        name = header.get("name")
        value = header.get("value")
        if isinstance(name, str) and isinstance(value, str):
            values.setdefault(name.lower(), value)
    return values


def _address_list(value: str) -> list[str]:
    if not value.strip():
        return []
    addresses: list[str] = []
    for name, address in getaddresses([value]):
        if not address:
            continue
        addresses.append(f"{name} <{address}>" if name else address)
    return addresses


def _is_attachment_part(part: dict[str, Any]) -> bool:
    body = part.get("body") if isinstance(part.get("body"), dict) else {}
    return bool(part.get("filename")) or bool(body.get("attachmentId"))


def _attachment_meta(part: dict[str, Any], headers: dict[str, str]) -> AttachmentMeta:
    body = part.get("body") if isinstance(part.get("body"), dict) else {}
    attachment_id = body.get("attachmentId")
    inline_data: bytes | None = None
    if not attachment_id:
        # Small parts carry their bytes in body.data and have no attachment id.
        attachment_id = f"{INLINE_PART_ID_PREFIX}{part.get('partId') or part.get('filename')}"
        raw = body.get("data")
        if isinstance(raw, str) and raw:
            inline_data = decode_base64url(raw)

    content_id = headers.get("content-id")
    disposition = headers.get("content-disposition", "")
    size = body.get("size")
    return AttachmentMeta(
        provider_attachment_id=str(attachment_id),
        filename=part.get("filename") or "unnamed_attachment",
        mime_type=part.get("mimeType") or "application/octet-stream",
        size_bytes=size if isinstance(size, int) and size >= 0 else 0,
        content_id=content_id.strip() if content_id else None,
        is_inline="inline" in disposition.lower(),
        inline_data=inline_data,
    )


def _walk_mime_tree(
    part: dict[str, Any],
    bodies: dict[str, str],
    attachments: list[AttachmentMeta],
    depth: int = 0,
) -> None:
    # Prevent stack overflow from malicious deeply nested messages
    if depth > MAX_MIME_DEPTH:
        logger.warning("Maximum recursion depth reached in email parsing")
        return

    headers = _header_map(part.get("headers"))
    if _is_attachment_part(part):
        attachments.append(_attachment_meta(part, headers))
        return

    body = part.get("body") if isinstance(part.get("body"), dict) else {}
    data = body.get("data")
    mime_type = part.get("mimeType", "")
    if isinstance(data, str) and data:
        content = decode_base64url(data).decode("utf-8", errors="replace")
        if mime_type == "text/plain":
            bodies.setdefault("text", content)
        elif mime_type == "text/html":
            bodies.setdefault("html", content)
        return

    for child in part.get("parts") or []:
        if isinstance(child, dict):
            _walk_mime_tree(child, bodies, attachments, depth + 1)


def _message_date(headers: dict[str, str], internal_date: Any) -> datetime | None:
    date_header = headers.get("date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None and parsed.year >= 1970:
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        logger.debug("Invalid Date header %r, falling back to internalDate", date_header)

    try:
        millis = int(internal_date)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def gmail_message_to_normalized(payload: dict[str, Any]) -> NormalizedMessage:
    """Normalize a Gmail ``format=full`` message resource."""
    message_id = payload.get("id")
    if not isinstance(message_id, str) or not message_id:
        raise ValueError("Gmail message payload is missing an id")
    root = payload.get("payload")
    if not isinstance(root, dict):
        raise ValueError(f"Gmail message {message_id!r} has no MIME payload")

    headers = _header_map(root.get("headers"))
    bodies: dict[str, str] = {}
    attachments: list[AttachmentMeta] = []
    _walk_mime_tree(root, bodies, attachments)

    html_body = bodies.get("html")
    body = clean_html_body(html_body) if html_body else bodies.get("text", "")
    labels = [label for label in payload.get("labelIds") or [] if isinstance(label, str)]

    return NormalizedMessage(
        provider_id=message_id,
        thread_id=payload.get("threadId"),
        sender=headers.get("from", ""),
        to=_address_list(headers.get("to", "")),
        cc=_address_list(headers.get("cc", "")),
        bcc=_address_list(headers.get("bcc", "")),
        subject=headers.get("subject", ""),
        body=body,
        html_body=html_body,
        snippet=payload.get("snippet") or "",
        labels=labels,
        is_read="UNREAD" not in labels,
        is_important="IMPORTANT" in labels,
        received_at=_message_date(headers, payload.get("internalDate")),
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GmailProvider(MessageProvider):
    """Gmail REST adapter for the authenticated mailbox."""

    integration = IntegrationProvider.GMAIL

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api = BearerApiClient(
            http_client,
            provider=self.integration,
            base_url=GMAIL_API_BASE_URL,
            sleep=sleep,
        )

    async def _list_message_ids(self, token: str, query: str, limit: int) -> list[str]:
        ids: list[str] = []
        params: dict[str, Any] = {"q": query, "maxResults": min(limit, MAX_LIST_PAGE_SIZE)}
        while len(ids) < limit:
            payload = await self._api.request_json("GET", "/messages", token=token, params=params)
            assert payload is not None
            for item in payload.get("messages") or []:
                if isinstance(item, dict) and isinstance(item.get("id"), str):
                    ids.append(item["id"])
            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                break
            params = {**params, "pageToken": next_page}
        return ids[:limit]

    async def list_messages(
        self, token: str, query: str, limit: int
    ) -> AsyncIterator[NormalizedMessage | RecordError]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        for message_id in await self._list_message_ids(token, query, limit):
            try:
                payload = await self._api.request_json(
                    "GET",
                    f"/messages/{quote(message_id, safe='')}",
                    token=token,
                    params={"format": "full"},
                    allow_not_found=True,
                )
            except FetchFailedError as exc:
                logger.warning("Error fetching Gmail message %s: %s", message_id, exc)
                yield RecordError(message_id, str(exc))
                continue
            if payload is None:
                yield RecordError(message_id, "message disappeared before it could be fetched")
                continue
            try:
                yield gmail_message_to_normalized(payload)
            except ValueError as exc:
                yield RecordError(message_id, str(exc))

    async def get_attachment(self, token: str, message_id: str, attachment_id: str) -> bytes:
        """Download attachment bytes (Gmail returns them base64url-encoded)."""
        payload = await self._api.request_json(
            "GET",
            f"/messages/{quote(message_id, safe='')}/attachments/{quote(attachment_id, safe='')}",
            token=token,
        )
        assert payload is not None
        data = payload.get("data")
        if not isinstance(data, str) or not data:
            raise FetchFailedError(f"No data in attachment response for {attachment_id}")
        try:
            return decode_base64url(data)
        except ValueError as exc:
            raise FetchFailedError(f"Attachment {attachment_id} is not valid base64url") from exc
