"""Production pipeline: pack mail in, calendar operations out.

Each run walks the enabled packs, lists mail for every enabled source,
and processes messages one at a time in the order the mailbox returned
them:

1. Skip messages already processed
2. Fetch body and attachments (under a timeout)
3. Extract events, apply pack event defaults
4. Per event: dedup gate, then persist event + operation and follow
   the plan (execute in autopilot, queue for approval, or record only
   in dry-run)
5. Record the processed message, apply the source label
6. Forward the message when nothing was extracted

A failing message records an ``extraction_error`` exception and the run
moves on. Progress is never rolled back: every message that finished
keeps its rows.

Usage:
    from concierge.engine.pipeline import AgentPipeline

    pipeline = AgentPipeline(mail, calendar, store, config, default_registry())
    result = await pipeline.run()
"""

from __future__ import annotations

import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING

from concierge.core.errors import CalendarWriteError, ConciergeError, OperationTimeoutError
from concierge.core.logging import get_logger, set_correlation_id
from concierge.core.timeout import with_timeout
from concierge.db.store import (
    CalendarOperation,
    PersistedEvent,
    ProcessedMessage,
    utcnow,
)
from concierge.engine.extractor import EventExtractor, ExtractedEvent, apply_event_defaults
from concierge.engine.fingerprint import fingerprint_components
from concierge.engine.forwarding import Forwarder
from concierge.engine.interfaces import MailQuery
from concierge.engine.operations import OperationExecutor, plan_operation

if TYPE_CHECKING:
    from concierge.config_schema import AgentMode, AppConfig, PackConfig, SourceConfig
    from concierge.db.store import DatabaseStore
    from concierge.engine.interfaces import CalendarSink, MailSource
    from concierge.packs.models import Pack
    from concierge.packs.registry import PackRegistry

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class RunResult:
    """Counters for one production run."""

    run_id: str
    mode: str
    duration_ms: int = 0
    messages_seen: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    events_extracted: int = 0
    events_created: int = 0
    pending_approval: int = 0
    duplicates: int = 0
    calendar_errors: int = 0
    forwarded: int = 0
    error: str | None = None


def build_source_query(source: SourceConfig, lookback_days: int, today: date | None = None) -> MailQuery:
    today = today or date.today()
    return MailQuery(
        received_after=today - timedelta(days=lookback_days),
        from_domains=tuple(source.from_domains),
        from_addresses=tuple(source.from_addresses),
        keywords=tuple(source.keywords),
    )


def source_label(pack: Pack, pack_config: PackConfig) -> str | None:
    """Label of the first enabled source, else the pack's default label."""
    for source in pack_config.sources:
        if source.enabled and source.label:
            return source.label
    return pack.defaults.label if pack_config.sources else None


class AgentPipeline:
    """Runs the production pipeline.

    Attributes:
        _mail: MailSource for listing, fetching, labelling and forwarding
        _store: DatabaseStore
        _config: Application configuration
        _registry: Packs that may be processed
        _extractor: EventExtractor
        _executor: OperationExecutor for autopilot writes
        _forwarder: Forwarder for messages without events
    """

    def __init__(
        self,
        mail: MailSource,
        calendar: CalendarSink,
        store: DatabaseStore,
        config: AppConfig,
        registry: PackRegistry,
        extractor: EventExtractor | None = None,
        executor: OperationExecutor | None = None,
        forwarder: Forwarder | None = None,
    ):
        timeout = config.processing.fetch_timeout_seconds
        self._mail = mail
        self._store = store
        self._config = config
        self._registry = registry
        self._extractor = extractor or EventExtractor()
        self._executor = executor or OperationExecutor(
            calendar, store, calendar_id=config.agent.calendar_id, timeout=timeout
        )
        self._forwarder = forwarder or Forwarder(mail, store, timeout=timeout)

    def update_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config."""
        self._config = config

    async def run(self, mode: AgentMode | None = None) -> RunResult:
        """Execute one run over every enabled pack.

        Args:
            mode: Overrides agent.mode for this run

        Returns:
            RunResult with counters and timing
        """
        mode = mode or self._config.agent.mode
        run_id = str(uuid.uuid4())
        set_correlation_id(run_id)
        start_time = time.monotonic()
        result = RunResult(run_id=run_id, mode=mode)

        logger.info("agent_run_start", mode=mode, packs=len(self._config.packs))

        try:
            for pack, pack_config in self._enabled_packs():
                await self._run_pack(pack, pack_config, mode, result)

            await self._store.set_state("last_run_at", utcnow().isoformat())
            await self._store.set_state("last_run_id", run_id)

        except ConciergeError as e:
            result.error = str(e)
            logger.error("agent_run_error", error=str(e), error_type=type(e).__name__)
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "agent_run_complete",
                duration_ms=result.duration_ms,
                messages_seen=result.messages_seen,
                processed=result.processed,
                skipped=result.skipped,
                failed=result.failed,
                events_extracted=result.events_extracted,
                events_created=result.events_created,
                pending_approval=result.pending_approval,
                duplicates=result.duplicates,
                calendar_errors=result.calendar_errors,
                forwarded=result.forwarded,
            )
            set_correlation_id(None)

        return result

    def _enabled_packs(self) -> list[tuple[Pack, PackConfig]]:
        """Enabled, registered packs, highest priority first."""
        selected = []
        for pack_config in self._config.packs:
            if not pack_config.enabled:
                continue
            pack = self._registry.get(pack_config.pack_id)
            if pack is None:
                logger.warning("unknown_pack_skipped", pack_id=pack_config.pack_id)
                continue
            selected.append((pack, pack_config))
        return sorted(
            selected,
            key=lambda item: item[1].priority if item[1].priority is not None else item[0].priority,
            reverse=True,
        )

    async def _run_pack(
        self, pack: Pack, pack_config: PackConfig, mode: AgentMode, result: RunResult
    ) -> None:
        seen: set[str] = set()
        for source in pack_config.sources:
            if not source.enabled:
                continue
            query = build_source_query(source, self._config.processing.lookback_days)
            logger.info("pack_source_query", pack_id=pack.id, source=source.name, query=query.describe())
            message_ids = await with_timeout(
                f"list_message_ids {pack.id}/{source.name}",
                self._mail.list_message_ids,
                query,
                self._config.processing.max_emails_per_run,
                timeout=self._config.processing.fetch_timeout_seconds,
            )
            for message_id in message_ids:
                if message_id in seen:
                    continue
                seen.add(message_id)
                result.messages_seen += 1
                await self._process_message(message_id, pack, pack_config, mode, result)

    async def _process_message(
        self,
        message_id: str,
        pack: Pack,
        pack_config: PackConfig,
        mode: AgentMode,
        result: RunResult,
    ) -> None:
        """Process one message. Failures are recorded, never raised."""
        if await self._store.is_message_processed(message_id):
            result.skipped += 1
            return

        timeout = self._config.processing.fetch_timeout_seconds
        try:
            message = await with_timeout(
                f"get_message {message_id}", self._mail.get_message, message_id, timeout=timeout
            )
            if message is None:
                logger.warning("message_not_found", message_id=message_id)
                result.skipped += 1
                return

            attachments = await with_timeout(
                f"get_attachments {message_id}", self._mail.get_attachments, message, timeout=timeout
            )
            extracted = self._extractor.extract_events(
                message_id,
                message.body,
                attachments,
                pack.id,
                prefer_ics=pack_config.extraction_hints.prefer_ics_over_text,
            )
            logger.info("events_extracted", message_id=message_id, pack_id=pack.id, count=len(extracted))
            result.events_extracted += len(extracted)

            defaults = pack_config.event_defaults
            fingerprints = []
            for event in extracted:
                event.intent = apply_event_defaults(
                    event.intent,
                    reminder_minutes=defaults.reminder_minutes,
                    color=defaults.color,
                    duration_minutes=defaults.duration_minutes,
                )
                await self._process_event(event, mode, result)
                fingerprints.append(event.fingerprint)

            await self._store.insert_processed_message(
                ProcessedMessage(
                    message_id=message_id,
                    pack_id=pack.id,
                    extraction_status="success" if extracted else "skipped",
                    events_extracted=len(extracted),
                    fingerprints=fingerprints,
                )
            )

            if mode != "dry-run":
                await self._apply_label(message_id, source_label(pack, pack_config))

            if not extracted and pack_config.forwarding.enabled:
                forwarded = await self._forwarder.handle(
                    message, pack.id, pack_config.forwarding, dry_run=mode == "dry-run"
                )
                if forwarded is not None and forwarded.success:
                    result.forwarded += 1

            result.processed += 1

        except OperationTimeoutError as e:
            result.failed += 1
            logger.warning("message_processing_timeout", message_id=message_id, error=str(e))
            await self._store.record_exception(
                "extraction_error",
                str(e),
                severity="medium",
                context={"message_id": message_id, "pack_id": pack.id, "timeout": True},
            )
        except Exception as e:
            result.failed += 1
            logger.error(
                "message_processing_failed",
                message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._store.record_exception(
                "extraction_error",
                str(e),
                severity="medium",
                context={
                    "message_id": message_id,
                    "pack_id": pack.id,
                    "stack": traceback.format_exc(),
                },
            )

    async def _process_event(self, event: ExtractedEvent, mode: AgentMode, result: RunResult) -> None:
        """Dedup gate, then persist the event and its operation and follow the plan."""
        key = fingerprint_components(event.source_message_id, event.intent)
        duplicates = await self._store.find_duplicate_events(
            event.fingerprint,
            key.title_normalized,
            key.date_key,
            key.time_key,
            event.source_message_id,
            self._config.processing.deduplication_window_days,
        )
        if duplicates:
            await self._record_duplicate(event, duplicates[0].fingerprint, result)
            return

        plan = plan_operation(event.confidence, mode, self._config.confidence)
        persisted = PersistedEvent(
            id=str(uuid.uuid4()),
            fingerprint=event.fingerprint,
            source_message_id=event.source_message_id,
            pack_id=event.pack_id,
            intent=event.intent,
            title_normalized=key.title_normalized,
            date_key=key.date_key,
            time_key=key.time_key,
            confidence=event.confidence,
            status=plan.initial_event_status,
            provenance=event.provenance,
        )
        if not await self._store.insert_event(persisted):
            # Another run inserted the same fingerprint first.
            await self._record_duplicate(event, event.fingerprint, result)
            return

        operation = CalendarOperation(
            id=str(uuid.uuid4()),
            type="create",
            event_fingerprint=event.fingerprint,
            intent=event.intent,
            reason=plan.reason,
            requires_approval=plan.requires_approval,
        )
        await self._store.insert_operation(operation)
        await self._store.log_action(
            "event_persisted",
            message_id=event.source_message_id,
            event_fingerprint=event.fingerprint,
            details={
                "operation_id": operation.id,
                "confidence": event.confidence,
                "requires_approval": plan.requires_approval,
                "mode": mode,
            },
        )

        if plan.execute_now:
            try:
                await self._executor.execute(operation)
                result.events_created += 1
            except CalendarWriteError as e:
                result.calendar_errors += 1
                await self._store.record_exception(
                    "calendar_error",
                    str(e),
                    severity="high",
                    context={
                        "message_id": event.source_message_id,
                        "fingerprint": event.fingerprint,
                        "operation_id": operation.id,
                    },
                )
        elif mode == "dry-run":
            logger.info("dry_run_skip", fingerprint=event.fingerprint, operation_id=operation.id)
        else:
            result.pending_approval += 1
            logger.info(
                "operation_pending_approval",
                fingerprint=event.fingerprint,
                operation_id=operation.id,
                confidence=event.confidence,
            )

    async def _record_duplicate(self, event: ExtractedEvent, existing: str, result: RunResult) -> None:
        result.duplicates += 1
        logger.info("duplicate_detected", fingerprint=event.fingerprint, existing=existing)
        await self._store.record_exception(
            "duplicate_detected",
            "Duplicate event detected",
            severity="low",
            context={
                "message_id": event.source_message_id,
                "pack_id": event.pack_id,
                "fingerprint": event.fingerprint,
                "existing_fingerprint": existing,
                "title": event.intent.title,
            },
        )

    async def _apply_label(self, message_id: str, label: str | None) -> None:
        if not label:
            return
        try:
            await with_timeout(
                f"add_label {message_id}",
                self._mail.add_label,
                message_id,
                label,
                timeout=self._config.processing.fetch_timeout_seconds,
            )
        except ConciergeError as e:
            logger.warning("label_failed", message_id=message_id, label=label, error=str(e))
