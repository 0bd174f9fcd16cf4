"""Discovery session orchestrator.

Scans a bounded window of mail for one pack and proposes configuration:
which sender domains, keywords and platforms look like the family's
school or activity mail. Discovery never touches the calendar.

Per candidate message:
1. Fetch message and attachments (each under a timeout)
2. Update the scan accumulator (domain, sender, platform, keywords, ICS)
3. Score relevance, apply the ICS boost, record relay domains
4. Categorize; flag when relevant OR the category model wants it saved
5. Flagged messages produce Evidence + a PendingApproval row

A failing or timed-out candidate is logged and counted; only a failure
of the initial search fails the session.

Usage:
    from concierge.discovery.engine import DiscoveryEngine

    engine = DiscoveryEngine(mail=mail_source, store=store, config=config)
    session = await engine.run_discovery(SCHOOL_PACK, lookback_days=30)
"""

from __future__ import annotations

import time
import traceback
import uuid
from datetime import date, timedelta
from typing import TYPE_CHECKING

from concierge.core.errors import OperationTimeoutError
from concierge.core.logging import get_logger, set_correlation_id
from concierge.core.timeout import with_timeout
from concierge.db.store import DiscoverySession, Evidence, PendingApproval, utcnow
from concierge.discovery.categories import CategoryClassifier
from concierge.discovery.person import SHARED_PERSON, PersonAssigner, PersonAssignment
from concierge.discovery.proposals import build_session_output
from concierge.discovery.relevance import (
    ScoringInput,
    apply_ics_boost,
    is_relay_domain,
    score_relevance,
)
from concierge.discovery.signals import (
    DiscoveryAccumulator,
    detect_platform,
    extract_address,
    extract_display_name,
    extract_keywords,
    has_ics_attachment,
)
from concierge.engine.interfaces import (
    ClassificationFields,
    MailQuery,
    ObligationClassification,
)

if TYPE_CHECKING:
    from concierge.config_schema import AppConfig, PackConfig
    from concierge.db.store import DatabaseStore
    from concierge.engine.interfaces import EmailClassifier, MailSource
    from concierge.packs.models import Pack

logger = get_logger(__name__)

MAX_ANCHOR_KEYWORDS_PER_SOURCE = 5
ASSIGNMENT_SNIPPET_CHARS = 500
ASSIGNMENT_BODY_CHARS = 2000


def build_discovery_query(
    pack_config: PackConfig | None, lookback_days: int, today: date | None = None
) -> MailQuery:
    """Date window plus up to five anchor keywords per configured source.

    Domains are deliberately left out of the query: they are scoring
    features, so mail from unexpected relays can still be found.
    """
    today = today or date.today()
    anchors: list[str] = []
    if pack_config is not None:
        for source in pack_config.sources:
            anchors.extend(source.keywords[:MAX_ANCHOR_KEYWORDS_PER_SOURCE])
    return MailQuery(
        received_after=today - timedelta(days=lookback_days),
        keywords=tuple(dict.fromkeys(anchors)),
    )


def split_from_header(from_header: str) -> tuple[str, str | None]:
    """``(address, display name)``; display name is None for a bare address."""
    address = extract_address(from_header)
    if "<" not in from_header:
        return address, None
    return address, extract_display_name(from_header) or None


class DiscoveryEngine:
    """Runs discovery sessions for a pack.

    Attributes:
        _mail: MailSource to search and fetch from
        _store: DatabaseStore for sessions, evidence and pending approvals
        _config: Application configuration
        _classifier: Optional obligation classifier
        _assigner: PersonAssigner built from the family config
    """

    def __init__(
        self,
        mail: MailSource,
        store: DatabaseStore,
        config: AppConfig,
        classifier: EmailClassifier | None = None,
        assigner: PersonAssigner | None = None,
    ):
        self._mail = mail
        self._store = store
        self._config = config
        self._classifier = classifier
        self._assigner = assigner or PersonAssigner.from_config(config.family)

    async def run_discovery(
        self,
        pack: Pack,
        lookback_days: int | None = None,
        pack_config: PackConfig | None = None,
    ) -> DiscoverySession:
        """Run one discovery session.

        Args:
            pack: Pack whose rules drive scoring
            lookback_days: Scan window; defaults to discovery.lookback_days
            pack_config: The family's config for this pack; looked up by
                pack id when omitted

        Returns:
            The completed DiscoverySession

        Raises:
            Exception: Whatever the initial search raised; the session is
                persisted as ``failed`` first
        """
        lookback_days = lookback_days or self._config.discovery.lookback_days
        if pack_config is None:
            pack_config = self._config.get_pack_config(pack.id)

        session = DiscoverySession(id=str(uuid.uuid4()), pack_id=pack.id, started_at=utcnow())
        await self._store.create_discovery_session(session)
        set_correlation_id(session.id)
        start_time = time.monotonic()

        configured_domains = pack_config.configured_domains() if pack_config else []
        mode = "targeted" if pack_config and pack_config.sources else "anchored"
        acc = DiscoveryAccumulator()

        logger.info(
            "discovery_started",
            session_id=session.id,
            pack_id=pack.id,
            lookback_days=lookback_days,
            mode=mode,
        )

        try:
            query = build_discovery_query(pack_config, lookback_days)
            logger.info("discovery_query_built", query=query.describe(), configured_domains=configured_domains)

            message_ids = await with_timeout(
                "list_message_ids",
                self._mail.list_message_ids,
                query,
                self._config.discovery.max_candidates,
                timeout=self._config.processing.fetch_timeout_seconds,
            )
            session.emails_scanned = len(message_ids)
            logger.info("discovery_messages_listed", count=len(message_ids), mode=mode)

            categorizer = CategoryClassifier(pack_config.category_preferences if pack_config else None)
            for position, message_id in enumerate(message_ids, start=1):
                await self._scan_message(
                    session, pack, message_id, acc, configured_domains, categorizer, position
                )

            session.output = build_session_output(acc, session.emails_scanned, pack.name)
            session.status = "completed"
            session.completed_at = utcnow()
            await self._store.save_discovery_session(session)

        except Exception as e:
            session.status = "failed"
            session.error = str(e)
            session.completed_at = utcnow()
            session.output = build_session_output(acc, session.emails_scanned, pack.name)
            logger.error(
                "discovery_failed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._store.save_discovery_session(session)
            raise

        finally:
            logger.info(
                "discovery_completed",
                session_id=session.id,
                status=session.status,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                emails_scanned=session.emails_scanned,
                evidence=len(acc.evidence),
                processed=acc.processed,
                skipped=acc.skipped,
                failed=acc.failed,
                timeouts=acc.timeouts,
            )
            set_correlation_id(None)

        return session

    async def _scan_message(
        self,
        session: DiscoverySession,
        pack: Pack,
        message_id: str,
        acc: DiscoveryAccumulator,
        configured_domains: list[str],
        categorizer: CategoryClassifier,
        position: int,
    ) -> None:
        """Process one candidate; failures are counted and recorded, not raised."""
        timeout = self._config.processing.fetch_timeout_seconds
        label = f"[{position}/{session.emails_scanned}]"
        try:
            message = await with_timeout(
                f"{label} get_message", self._mail.get_message, message_id, timeout=timeout
            )
            if message is None:
                logger.debug("discovery_message_missing", message_id=message_id)
                acc.skipped += 1
                return

            from_header = message.header("from") or ""
            subject = message.header("subject") or ""
            domain = acc.observe_sender(from_header)

            attachments = await with_timeout(
                f"{label} get_attachments", self._mail.get_attachments, message, timeout=timeout
            )
            has_ics = has_ics_attachment(attachments)
            if has_ics:
                acc.observe_ics()

            platform = detect_platform(message, pack)
            if platform:
                acc.observe_platform(platform, message_id)

            body_text = message.body.text or ""
            acc.observe_keywords(extract_keywords(f"{subject} {body_text}", pack))

            relevance = score_relevance(
                ScoringInput(from_header=from_header, subject=subject, snippet=message.snippet),
                pack,
                configured_domains,
            )
            score = apply_ics_boost(relevance.score, has_ics)
            if is_relay_domain(domain, score, configured_domains):
                acc.observe_relay(domain)

            categorization = categorizer.categorize(subject, from_header, body_text)
            acc.processed += 1

            logger.debug(
                "discovery_message_scored",
                message_id=message_id,
                score=score,
                winning_rule=relevance.winning_rule.rule_id if relevance.winning_rule else None,
                category=categorization.primary_category,
                should_save=categorization.should_save,
            )

            if score <= 0 and not categorization.should_save:
                return

            rule_ids = relevance.matched_rule_ids
            if has_ics:
                rule_ids = [*rule_ids, "ics_attachment"]
            if categorization.should_save and score <= 0:
                rule_ids = [*rule_ids, "category"]

            evidence = Evidence(
                id=str(uuid.uuid4()),
                session_id=session.id,
                message_id=message_id,
                relevance_score=score,
                subject=subject,
                sender=from_header,
                date=message.header("date"),
                snippet=message.snippet,
                matched_rules=rule_ids,
            )
            await self._store.insert_evidence(evidence)
            acc.add_evidence(evidence)

            from_email, from_name = split_from_header(from_header)
            assignment = self._assign_person(subject, message.snippet, from_email, from_name, body_text)
            classification = await self._classify(
                ClassificationFields(
                    subject=subject,
                    snippet=message.snippet,
                    from_email=from_email,
                    from_name=from_name,
                    body_text=message.body.text,
                )
            )

            await self._store.insert_pending_approval(
                PendingApproval(
                    id=evidence.id,
                    message_id=message_id,
                    pack_id=pack.id,
                    relevance_score=score,
                    from_email=from_email,
                    from_name=from_name,
                    subject=subject,
                    snippet=message.snippet,
                    primary_category=categorization.primary_category,
                    secondary_categories=list(categorization.secondary_categories),
                    category_scores=dict(categorization.category_scores),
                    save_reasons=list(categorization.save_reasons),
                    person=assignment.person,
                    assignment_reason=assignment.reason,
                    item_type=classification.item_type,
                    obligation_date=classification.obligation_date,
                    classification_confidence=classification.confidence,
                    classification_reasoning=classification.reasoning,
                )
            )

        except OperationTimeoutError as e:
            acc.failed += 1
            acc.timeouts += 1
            logger.warning("discovery_message_timeout", message_id=message_id, error=str(e))
            await self._store.record_exception(
                "api_error",
                str(e),
                severity="low",
                context={
                    "session_id": session.id,
                    "message_id": message_id,
                    "pack_id": pack.id,
                    "timeout": True,
                },
            )
        except Exception as e:
            acc.failed += 1
            logger.error(
                "discovery_message_failed",
                message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._store.record_exception(
                "api_error",
                str(e),
                severity="medium",
                context={
                    "session_id": session.id,
                    "message_id": message_id,
                    "pack_id": pack.id,
                    "stack": traceback.format_exc(),
                },
            )

    def _assign_person(
        self, subject: str, snippet: str, from_email: str, from_name: str | None, body: str
    ) -> PersonAssignment:
        if not self._config.discovery.person_assignment_enabled:
            return PersonAssignment(SHARED_PERSON, "shared_default", 0.0, (SHARED_PERSON,))
        return self._assigner.assign(
            subject,
            snippet[:ASSIGNMENT_SNIPPET_CHARS],
            from_email,
            from_name,
            body[:ASSIGNMENT_BODY_CHARS],
        )

    async def _classify(self, fields: ClassificationFields) -> ObligationClassification:
        if self._classifier is None:
            return ObligationClassification.neutral()
        try:
            return await self._classifier.classify(fields)
        except Exception as e:
            logger.warning("obligation_classification_failed", error=str(e))
            return ObligationClassification.neutral("Default classification due to processing error")
