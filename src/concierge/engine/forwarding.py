"""Forward pack mail that produced no calendar event.

Forwarding is a side channel of the production pipeline: a message that
matched a pack source but yielded nothing for the calendar can still be
sent on to a human. Failures are recorded and never stop the run.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING

from concierge.core.logging import get_logger
from concierge.core.timeout import DEFAULT_TIMEOUT_SECONDS, with_timeout
from concierge.db.store import ForwardedMessage

if TYPE_CHECKING:
    from concierge.config_schema import ForwardingCondition, ForwardingConfig
    from concierge.db.store import DatabaseStore
    from concierge.engine.interfaces import MailMessage, MailSource

logger = get_logger(__name__)


def _as_list(value: object) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    return []


def condition_matches(
    condition: ForwardingCondition,
    text: str,
    event_found: bool = False,
    confidence: float | None = None,
) -> bool:
    """Whether one condition holds for lowercased subject + body text."""
    if condition.type in ("no_event_found", "always"):
        matched = condition.type == "always" or not event_found
    elif condition.type == "keyword_match":
        matched = any(k.lower() in text for k in _as_list(condition.value))
    elif condition.type == "confidence_below":
        threshold = condition.value if isinstance(condition.value, int | float) else None
        matched = event_found and confidence is not None and threshold is not None and confidence < threshold
    else:
        matched = False

    if matched and any(p.lower() in text for p in condition.exclude_patterns):
        return False
    return matched


def evaluate_conditions(
    conditions: Sequence[ForwardingCondition],
    subject: str,
    body_text: str,
    event_found: bool = False,
    confidence: float | None = None,
) -> list[ForwardingCondition]:
    text = f"{subject} {body_text}".lower()
    return [c for c in conditions if condition_matches(c, text, event_found, confidence)]


def describe_condition(condition: ForwardingCondition) -> str:
    if condition.type == "no_event_found":
        return "No calendar event found but message matched pack criteria"
    if condition.type == "keyword_match":
        return f"Matched keywords: {', '.join(_as_list(condition.value))}"
    if condition.type == "always":
        return "Always forward matching messages"
    return f"Condition met: {condition.type}"


def build_reason(conditions: Sequence[ForwardingCondition]) -> str:
    return " | ".join(describe_condition(c) for c in conditions)


class Forwarder:
    """Evaluates forwarding rules for a message and sends it on."""

    def __init__(
        self, mail: MailSource, store: DatabaseStore, timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self._mail = mail
        self._store = store
        self._timeout = timeout

    async def handle(
        self,
        message: MailMessage,
        pack_id: str,
        config: ForwardingConfig,
        dry_run: bool = False,
    ) -> ForwardedMessage | None:
        """Forward the message when its pack's conditions match.

        Args:
            message: Message that produced no events
            pack_id: Pack the message was processed under
            config: The pack's forwarding settings
            dry_run: Record the decision without sending

        Returns:
            The recorded ForwardedMessage, or None when nothing was sent
        """
        if not config.enabled:
            return None

        if await self._store.is_message_forwarded(message.id):
            logger.debug("message_already_forwarded", message_id=message.id, pack_id=pack_id)
            return None

        matched = evaluate_conditions(
            config.conditions,
            message.header("subject") or "",
            message.body.text or "",
        )
        if not matched:
            logger.debug("forwarding_conditions_not_met", message_id=message.id, pack_id=pack_id)
            return None

        reason = build_reason(matched)
        record = ForwardedMessage(
            id=str(uuid.uuid4()),
            source_message_id=message.id,
            forwarded_to=list(config.forward_to),
            pack_id=pack_id,
            success=True,
            reason=reason,
            conditions=[c.type for c in matched],
        )

        if dry_run:
            logger.info("dry_run_forward_skipped", message_id=message.id, reason=reason)
            record.reason = f"[dry-run] {reason}"
            await self._store.insert_forwarded_message(record)
            return record

        try:
            await with_timeout(
                f"forward_message {message.id}",
                self._mail.forward_message,
                message.id,
                list(config.forward_to),
                f"{config.subject_prefix.strip()} {reason}".strip(),
                timeout=self._timeout,
            )
            logger.info("email_forwarded", message_id=message.id, pack_id=pack_id, to=config.forward_to)
        except Exception as e:
            record.success = False
            record.error = str(e)
            logger.error("forwarding_failed", message_id=message.id, pack_id=pack_id, error=str(e))
            await self._store.record_exception(
                "forwarding_error",
                str(e),
                severity="medium",
                context={"message_id": message.id, "pack_id": pack_id},
            )

        await self._store.insert_forwarded_message(record)
        return record
