"""Pydantic configuration schema for the Family Concierge agent.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from concierge.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

AgentMode = Literal["copilot", "autopilot", "dry-run"]

Sensitivity = Literal["conservative", "balanced", "broad", "off"]

EmailCategory = Literal[
    "school",
    "sports_activities",
    "medical_health",
    "friends_social",
    "logistics",
    "forms_admin",
    "financial_billing",
    "community_optional",
]

ReconciliationPolicy = Literal["respect_manual", "flag_conflict"]


def _reject_traversal(v: str, what: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{what} cannot be empty")
    if ".." in v:
        raise ValueError(f"{what} cannot contain '..' (path traversal)")
    return v


class AuthConfig(BaseModel):
    """Azure AD authentication configuration."""

    client_id: str = Field(default="", description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "Mail.Send",
            "Calendars.ReadWrite",
            "User.Read",
        ],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to MSAL token cache file",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        """Ensure token cache path doesn't contain path traversal."""
        return _reject_traversal(v, "Token cache path")


class AgentConfig(BaseModel):
    """Run mode and scheduling for the production pipeline."""

    mode: AgentMode = Field(
        default="copilot",
        description="'copilot' queues everything for approval, 'autopilot' executes "
        "high-confidence events, 'dry-run' never writes to the calendar",
    )
    interval_minutes: int = Field(
        default=30,
        ge=1,
        le=1440,
        description="How often the scheduler runs the pipeline (minutes)",
    )
    calendar_id: str = Field(
        default="primary",
        description="Target calendar id ('primary' for the default calendar)",
    )


class ConfidenceThresholds(BaseModel):
    """Confidence thresholds steering the calendar operation state machine."""

    auto_create: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for unattended creation in autopilot",
    )
    auto_update: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for unattended updates",
    )
    require_review_below: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Events below this confidence always require approval",
    )


class ProcessingConfig(BaseModel):
    """Production pipeline limits."""

    max_emails_per_run: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Max messages fetched per source query",
    )
    lookback_days: int = Field(
        default=14,
        ge=1,
        le=365,
        description="How far back each run searches (days)",
    )
    deduplication_window_days: int = Field(
        default=14,
        ge=0,
        le=365,
        description="Events with the same title within this many days are duplicates",
    )
    fetch_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=300,
        description="Per-call timeout for message and attachment fetches",
    )


class DiscoveryConfig(BaseModel):
    """Discovery scan configuration."""

    lookback_days: int = Field(default=30, ge=1, le=365)
    max_candidates: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Upper bound on message ids fetched per discovery session",
    )
    person_assignment_enabled: bool = Field(default=True)


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    classifier: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for obligation/announcement classification",
    )


class SourceConfig(BaseModel):
    """A user-approved mail source for a pack."""

    name: str
    from_domains: list[str] = Field(
        default_factory=list,
        description="Sender domains (supports wildcards like *school*.org)",
    )
    from_addresses: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    label: str | None = Field(
        default=None,
        description="Category applied to processed messages",
    )
    enabled: bool = True


class ExtractionHints(BaseModel):
    """Hints for the event extractor."""

    prefer_ics_over_text: bool = True
    default_duration_minutes: int = Field(default=60, ge=5, le=1440)


class EventDefaults(BaseModel):
    """Defaults applied to created calendar events."""

    duration_minutes: int = Field(default=60, ge=5, le=1440)
    reminder_minutes: list[int] = Field(default_factory=lambda: [1440, 60])
    color: str | None = None


ForwardingConditionType = Literal["no_event_found", "keyword_match", "always", "confidence_below"]


class ForwardingCondition(BaseModel):
    """One condition that can trigger forwarding."""

    type: ForwardingConditionType
    value: str | list[str] | float | None = None
    exclude_patterns: list[str] = Field(default_factory=list)


class ForwardingConfig(BaseModel):
    """Forward messages that produced no calendar event."""

    enabled: bool = False
    forward_to: list[str] = Field(default_factory=list)
    conditions: list[ForwardingCondition] = Field(default_factory=list)
    subject_prefix: str = "[FCA] "

    @model_validator(mode="after")
    def require_recipients(self) -> "ForwardingConfig":
        """Enabled forwarding needs at least one recipient."""
        if self.enabled and not self.forward_to:
            raise ValueError("forwarding.forward_to must list at least one address when enabled")
        return self


class CategoryPreferences(BaseModel):
    """Which email categories are surfaced during discovery, and how eagerly."""

    enabled: list[EmailCategory] = Field(
        default_factory=lambda: [
            "school",
            "sports_activities",
            "medical_health",
            "logistics",
            "forms_admin",
        ]
    )
    sensitivity: dict[EmailCategory, Sensitivity] = Field(
        default_factory=lambda: {
            "school": "balanced",
            "sports_activities": "balanced",
            "medical_health": "conservative",
            "friends_social": "conservative",
            "logistics": "balanced",
            "forms_admin": "balanced",
            "financial_billing": "conservative",
            "community_optional": "off",
        }
    )


class PackConfig(BaseModel):
    """User configuration for one enabled pack."""

    pack_id: str
    enabled: bool = True
    priority: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Overrides the pack's built-in priority",
    )
    sources: list[SourceConfig] = Field(default_factory=list)
    extraction_hints: ExtractionHints = Field(default_factory=ExtractionHints)
    event_defaults: EventDefaults = Field(default_factory=EventDefaults)
    forwarding: ForwardingConfig = Field(default_factory=ForwardingConfig)
    category_preferences: CategoryPreferences | None = None

    def configured_domains(self) -> list[str]:
        """All sender domains across enabled sources, in declaration order."""
        domains: list[str] = []
        for source in self.sources:
            if source.enabled:
                domains.extend(source.from_domains)
        return domains


class FamilyMemberConfig(BaseModel):
    """A family member that discovered items can be assigned to."""

    name: str
    aliases: list[str] = Field(default_factory=list)
    grade: str | None = None
    groups: list[str] = Field(default_factory=list)


class AssignmentRuleConfig(BaseModel):
    """Source-level rule assigning matching mail to specific people."""

    people: list[str]
    from_domains: list[str] = Field(default_factory=list)
    from_emails: list[str] = Field(default_factory=list)
    subject_contains: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class FamilyConfig(BaseModel):
    """Family members and assignment rules."""

    members: list[FamilyMemberConfig] = Field(default_factory=list)
    assignment_rules: list[AssignmentRuleConfig] = Field(default_factory=list)


class ReconciliationConfig(BaseModel):
    """What to do when a synced event was edited by hand in the calendar."""

    policy: ReconciliationPolicy = "respect_manual"


class ApprovalConfig(BaseModel):
    """Approval link rendering."""

    base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the web server used in approve/reject links",
    )


class DigestConfig(BaseModel):
    """Digest configuration."""

    enabled: bool = True
    lookback_days: int = Field(default=7, ge=1, le=90)


class AppConfig(BaseModel):
    """Root configuration schema for the Family Concierge agent.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    auth: AuthConfig = Field(default_factory=AuthConfig)
    timezone: str = Field(
        default="America/New_York",
        description="IANA timezone for created events",
    )
    database_path: str = Field(default="data/concierge.db")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    confidence: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)

    packs: list[PackConfig] = Field(default_factory=list)
    family: FamilyConfig = Field(default_factory=FamilyConfig)

    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    digest: DigestConfig = Field(default_factory=DigestConfig)

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        return _reject_traversal(v, "Database path")

    @field_validator("packs")
    @classmethod
    def validate_unique_packs(cls, v: list[PackConfig]) -> list[PackConfig]:
        """Each pack may be configured once."""
        seen: set[str] = set()
        for pack in v:
            if pack.pack_id in seen:
                raise ValueError(f"Pack '{pack.pack_id}' is configured more than once")
            seen.add(pack.pack_id)
        return v

    def get_pack_config(self, pack_id: str) -> PackConfig | None:
        """Return the configuration for a pack, if present."""
        for pack in self.packs:
            if pack.pack_id == pack_id:
                return pack
        return None
