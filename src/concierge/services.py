"""Wiring of the runtime collaborators shared by the CLI and the web app.

Usage:
    from concierge.services import build_services

    services = await build_services(config)
    result = await services.pipeline.run()
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from concierge.core.logging import get_logger

if TYPE_CHECKING:
    from concierge.classifier.claude_classifier import ObligationClassifier
    from concierge.config_schema import AppConfig
    from concierge.db.store import DatabaseStore
    from concierge.discovery.engine import DiscoveryEngine
    from concierge.engine.approval import ApprovalHandler
    from concierge.engine.interfaces import CalendarSink, MailSource
    from concierge.engine.operations import OperationExecutor
    from concierge.engine.pipeline import AgentPipeline
    from concierge.engine.reconcile import Reconciler
    from concierge.packs.registry import PackRegistry

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class AppServices:
    """Everything a command or request handler needs."""

    config: AppConfig
    store: DatabaseStore
    registry: PackRegistry
    mail: MailSource
    calendar: CalendarSink
    executor: OperationExecutor
    approvals: ApprovalHandler
    pipeline: AgentPipeline
    discovery: DiscoveryEngine
    reconciler: Reconciler


async def open_store(config: AppConfig) -> DatabaseStore:
    from concierge.db.store import DatabaseStore

    db_path = Path(config.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    return store


def build_classifier(config: AppConfig) -> ObligationClassifier | None:
    """Claude-backed classifier, or None when no API key is configured."""
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.info("obligation_classifier_disabled", reason="ANTHROPIC_API_KEY not set")
        return None

    import anthropic

    from concierge.classifier.claude_classifier import ObligationClassifier

    return ObligationClassifier(anthropic.Anthropic(max_retries=3), model=config.models.classifier)


async def build_services(
    config: AppConfig,
    store: DatabaseStore | None = None,
    mail: MailSource | None = None,
    calendar: CalendarSink | None = None,
) -> AppServices:
    """Build the Graph collaborators and engines around one store.

    Mail and calendar default to the Outlook implementations signed in
    with the configured app registration.

    Raises:
        AuthenticationError: If auth settings are missing
    """
    from concierge.discovery.engine import DiscoveryEngine
    from concierge.engine.approval import ApprovalHandler
    from concierge.engine.operations import OperationExecutor
    from concierge.engine.pipeline import AgentPipeline
    from concierge.engine.reconcile import Reconciler
    from concierge.packs.registry import default_registry

    if mail is None or calendar is None:
        from concierge.auth.msal_auth import GraphAuth
        from concierge.graph.calendar import GraphCalendarSink
        from concierge.graph.client import GraphClient
        from concierge.graph.mail import GraphMailSource

        client = GraphClient(GraphAuth.from_config(config.auth))
        mail = mail or GraphMailSource(client)
        calendar = calendar or GraphCalendarSink(client, timezone=config.timezone)

    store = store or await open_store(config)
    registry = default_registry()
    timeout = config.processing.fetch_timeout_seconds
    executor = OperationExecutor(calendar, store, calendar_id=config.agent.calendar_id, timeout=timeout)

    return AppServices(
        config=config,
        store=store,
        registry=registry,
        mail=mail,
        calendar=calendar,
        executor=executor,
        approvals=ApprovalHandler(store, executor),
        pipeline=AgentPipeline(mail, calendar, store, config, registry, executor=executor),
        discovery=DiscoveryEngine(mail, store, config, classifier=build_classifier(config)),
        reconciler=Reconciler(
            calendar,
            store,
            calendar_id=config.agent.calendar_id,
            policy=config.reconciliation.policy,
            timeout=timeout,
        ),
    )
