"""Optional AI classification of discovered email.

Usage:
    from concierge.classifier import ObligationClassifier

    classifier = ObligationClassifier(anthropic.Anthropic(), model="claude-haiku-4-5-20251001")
    verdict = await classifier.classify(fields)
"""

from concierge.classifier.claude_classifier import (
    MAX_CLASSIFICATION_ATTEMPTS,
    ObligationClassifier,
    validate_obligation_date,
)
from concierge.classifier.prompts import CLASSIFY_OBLIGATION_TOOL

__all__ = [
    "ObligationClassifier",
    "MAX_CLASSIFICATION_ATTEMPTS",
    "CLASSIFY_OBLIGATION_TOOL",
    "validate_obligation_date",
]
