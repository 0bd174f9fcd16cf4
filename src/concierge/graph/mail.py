"""Outlook mailbox as a MailSource.

Searches use KQL through ``$search``; labels are Outlook categories.

Usage:
    from concierge.graph.mail import GraphMailSource

    mail = GraphMailSource(GraphClient(auth))
    ids = mail.list_message_ids(query, max_results=50)
"""

from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING, Any

from concierge.core.errors import GraphAPIError
from concierge.core.logging import get_logger
from concierge.engine.interfaces import Attachment, MailMessage, MailQuery, MessageBody

if TYPE_CHECKING:
    from concierge.graph.client import GraphClient

logger = get_logger(__name__)

MESSAGE_FIELDS = "id,subject,from,receivedDateTime,bodyPreview,body,hasAttachments,categories"


def _quote(term: str) -> str:
    return '"' + term.replace('"', "") + '"'


def build_kql(query: MailQuery) -> str:
    """KQL search string for a MailQuery; groups are AND-ed, terms OR-ed."""
    clauses = [f"received>={query.received_after.isoformat()}"]
    senders = [f"from:{d}" for d in query.from_domains] + [f"from:{a}" for a in query.from_addresses]
    if senders:
        clauses.append("(" + " OR ".join(senders) + ")")
    if query.keywords:
        clauses.append("(" + " OR ".join(_quote(k) for k in query.keywords) + ")")
    return " AND ".join(clauses)


def search_param(kql: str) -> str:
    """Wrap KQL for the $search parameter; inner quotes are backslash-escaped."""
    return '"' + kql.replace('"', '\\"') + '"'


def _format_sender(sender: dict[str, Any] | None) -> str:
    address = (sender or {}).get("emailAddress", {})
    email = address.get("address", "")
    name = address.get("name")
    if name and name != email:
        return f"{name} <{email}>"
    return email


def message_from_graph(data: dict[str, Any]) -> MailMessage:
    """Map a Graph message resource onto the core's MailMessage."""
    body = data.get("body") or {}
    content = body.get("content")
    is_html = (body.get("contentType") or "").lower() == "html"
    return MailMessage(
        id=data["id"],
        headers={
            "From": _format_sender(data.get("from")),
            "Subject": data.get("subject") or "",
            "Date": data.get("receivedDateTime") or "",
        },
        snippet=data.get("bodyPreview") or "",
        body=MessageBody(text=None if is_html else content, html=content if is_html else None),
        has_attachments=bool(data.get("hasAttachments")),
    )


class GraphMailSource:
    """Reads, forwards and labels messages in the signed-in mailbox."""

    def __init__(self, client: GraphClient):
        self._client = client

    def list_message_ids(self, query: MailQuery, max_results: int) -> list[str]:
        kql = build_kql(query)
        logger.debug("mail_search", query=kql, max_results=max_results)
        items = self._client.paginate(
            "/me/messages",
            params={
                "$search": search_param(kql),
                "$select": "id",
                "$top": min(max_results, 50),
            },
            limit=max_results,
        )
        return [item["id"] for item in items]

    def get_message(self, message_id: str) -> MailMessage | None:
        try:
            data = self._client.get(f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS})
        except GraphAPIError as e:
            if e.status_code == 404:
                logger.info("message_not_found", message_id=message_id)
                return None
            raise
        return message_from_graph(data)

    def get_attachments(self, message: MailMessage) -> list[Attachment]:
        """File attachments with their bytes decoded; others are skipped."""
        if not message.has_attachments:
            return []
        items = self._client.paginate(f"/me/messages/{message.id}/attachments")
        attachments = []
        for item in items:
            if item.get("@odata.type") != "#microsoft.graph.fileAttachment":
                continue
            try:
                data = base64.b64decode(item.get("contentBytes") or "")
            except (binascii.Error, ValueError):
                logger.warning("attachment_decode_failed", message_id=message.id, name=item.get("name"))
                continue
            attachments.append(
                Attachment(
                    filename=item.get("name") or "",
                    mime_type=item.get("contentType") or "application/octet-stream",
                    data=data,
                )
            )
        return attachments

    def forward_message(self, message_id: str, to: list[str], comment: str | None = None) -> None:
        self._client.post(
            f"/me/messages/{message_id}/forward",
            json={
                "comment": comment or "",
                "toRecipients": [{"emailAddress": {"address": address}} for address in to],
            },
        )
        logger.info("message_forwarded", message_id=message_id, recipients=len(to))

    def add_label(self, message_id: str, label: str) -> None:
        """Add an Outlook category, keeping the ones already set."""
        current = self._client.get(f"/me/messages/{message_id}", params={"$select": "categories"})
        categories = list(current.get("categories") or [])
        if label in categories:
            return
        self._client.patch(f"/me/messages/{message_id}", json={"categories": [*categories, label]})
        logger.debug("message_labelled", message_id=message_id, label=label)
