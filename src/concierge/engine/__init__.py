"""Event processing engines.

This package provides:
- Collaborator contracts (MailSource, CalendarSink, EmailClassifier)
- Event fingerprints and extraction
- The calendar operation state machine and executor
- Approval tokens
- The production pipeline, forwarding, reconciliation and digest
"""

from concierge.engine.approval import ApprovalHandler, ApprovalLinks, ApprovalResult, approval_links
from concierge.engine.digest import (
    DeferredItem,
    Digest,
    DigestBuilder,
    DigestItem,
    DismissedItem,
    EventItem,
    ForwardedItem,
    render_item,
    render_text,
)
from concierge.engine.extractor import EventExtractor, ExtractedEvent
from concierge.engine.fingerprint import (
    FingerprintKey,
    fingerprint_components,
    fingerprints_match,
    generate_fingerprint,
    normalize_title,
)
from concierge.engine.forwarding import Forwarder, evaluate_conditions
from concierge.engine.interfaces import (
    Attachment,
    CalendarSink,
    ClassificationFields,
    EmailClassifier,
    MailMessage,
    MailQuery,
    MailSource,
    MessageBody,
    ObligationClassification,
)
from concierge.engine.operations import (
    AuditLogObserver,
    OperationExecutor,
    OperationObserver,
    OperationPlan,
    coupled_event_status,
    plan_operation,
    transition,
)
from concierge.engine.pipeline import AgentPipeline, RunResult
from concierge.engine.reconcile import Reconciler, ReconcileResult, detect_manual_edits

__all__ = [
    # Interfaces
    "Attachment",
    "CalendarSink",
    "ClassificationFields",
    "EmailClassifier",
    "MailMessage",
    "MailQuery",
    "MailSource",
    "MessageBody",
    "ObligationClassification",
    # Fingerprints and extraction
    "EventExtractor",
    "ExtractedEvent",
    "FingerprintKey",
    "fingerprint_components",
    "fingerprints_match",
    "generate_fingerprint",
    "normalize_title",
    # Operations
    "AuditLogObserver",
    "OperationExecutor",
    "OperationObserver",
    "OperationPlan",
    "coupled_event_status",
    "plan_operation",
    "transition",
    # Approval
    "ApprovalHandler",
    "ApprovalLinks",
    "ApprovalResult",
    "approval_links",
    # Pipeline
    "AgentPipeline",
    "Forwarder",
    "RunResult",
    "evaluate_conditions",
    # Reconciliation and digest
    "Reconciler",
    "ReconcileResult",
    "detect_manual_edits",
    "DeferredItem",
    "Digest",
    "DigestBuilder",
    "DigestItem",
    "DismissedItem",
    "EventItem",
    "ForwardedItem",
    "render_item",
    "render_text",
]
