"""Claude obligation classifier using forced tool use.

Decides whether a discovered email is an obligation (something the family
must attend or act on) or an announcement, and extracts the relevant
date. The classifier is optional and must never fail an item: every API,
timeout or parsing problem returns the neutral default classification.

Error handling strategy:
- Transient errors (429, 5xx, network): Handled by the Anthropic SDK
- Logical errors (missing tool call, bad fields): retried up to
  MAX_CLASSIFICATION_ATTEMPTS, then the neutral default

Usage:
    from concierge.classifier.claude_classifier import ObligationClassifier

    classifier = ObligationClassifier(anthropic.Anthropic(), model=config.models.classifier)
    result = await classifier.classify(fields)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

import anthropic

from concierge.classifier.prompts import (
    CLASSIFY_OBLIGATION_TOOL,
    SYSTEM_PROMPT,
    VALID_ITEM_TYPES,
    build_user_message,
)
from concierge.core.errors import OperationTimeoutError
from concierge.core.logging import get_logger
from concierge.core.timeout import with_timeout
from concierge.engine.interfaces import ClassificationFields, ObligationClassification

logger = get_logger(__name__)

MAX_CLASSIFICATION_ATTEMPTS = 3
CLASSIFY_TIMEOUT_SECONDS = 30.0
DATE_WINDOW_DAYS = 365

FAILURE_REASONING = "Default classification due to processing error"


class ObligationClassifier:
    """Classifies discovered email as obligation or announcement.

    Attributes:
        model: Claude model id
    """

    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str,
        timeout: float = CLASSIFY_TIMEOUT_SECONDS,
        today: Callable[[], date] = date.today,
    ):
        self._client = client
        self.model = model
        self._timeout = timeout
        self._today = today

    async def classify(self, fields: ClassificationFields) -> ObligationClassification:
        """Classify one email. Never raises.

        Args:
            fields: Subject, sender and body of the email

        Returns:
            ObligationClassification; the neutral default on any failure
        """
        today = self._today()
        messages = [{"role": "user", "content": build_user_message(fields, today)}]

        last_error: str | None = None
        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            try:
                response = await with_timeout(
                    "classify_obligation",
                    self._client.messages.create,
                    model=self.model,
                    max_tokens=300,
                    system=SYSTEM_PROMPT,
                    messages=messages,
                    tools=[CLASSIFY_OBLIGATION_TOOL],
                    tool_choice={"type": "tool", "name": CLASSIFY_OBLIGATION_TOOL["name"]},
                    timeout=self._timeout,
                )
            except OperationTimeoutError as e:
                last_error = str(e)
                logger.warning("classification_timeout", subject=fields.subject[:80], attempt=attempt)
                break
            except anthropic.APIError as e:
                last_error = str(e)
                logger.warning("classification_api_error", subject=fields.subject[:80], error=str(e))
                break

            tool_call = _extract_tool_call(response)
            if tool_call is None:
                last_error = "No tool call in response"
                logger.warning("classification_no_tool_call", attempt=attempt)
                continue

            validation_error = _validate_tool_call(tool_call)
            if validation_error:
                last_error = validation_error
                logger.warning("classification_invalid_response", attempt=attempt, error=validation_error)
                continue

            return ObligationClassification(
                item_type=tool_call["item_type"],
                obligation_date=validate_obligation_date(tool_call.get("obligation_date"), today),
                confidence=float(tool_call["confidence"]),
                reasoning=tool_call.get("reasoning") or "No reasoning provided",
            )

        logger.warning("classification_fell_back_to_default", error=last_error)
        return ObligationClassification.neutral(FAILURE_REASONING)


def _extract_tool_call(response: Any) -> dict[str, Any] | None:
    for block in getattr(response, "content", None) or []:
        if block.type == "tool_use" and block.name == CLASSIFY_OBLIGATION_TOOL["name"]:
            return block.input
    return None


def _validate_tool_call(data: dict[str, Any]) -> str | None:
    missing = [f for f in ("item_type", "confidence") if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    if data["item_type"] not in VALID_ITEM_TYPES:
        return f"Invalid item_type: '{data['item_type']}'"
    confidence = data["confidence"]
    if not isinstance(confidence, int | float) or not 0.0 <= confidence <= 1.0:
        return f"Invalid confidence: {confidence}"
    return None


def validate_obligation_date(value: str | None, today: date) -> str | None:
    """Keep a YYYY-MM-DD date within a year either side of today; drop anything else."""
    if not value:
        return None
    try:
        parsed = date.fromisoformat(value[:10])
    except ValueError:
        return None
    window = timedelta(days=DATE_WINDOW_DAYS)
    if parsed < today - window or parsed > today + window:
        return None
    return parsed.isoformat()
