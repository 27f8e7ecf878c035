"""Typed job payloads keyed by job type.

Each known job type has a payload dataclass. ``validate_payload`` turns the raw
mapping supplied at creation time into the normalized dict that is stored, and
``parse_payload`` rebuilds the typed object handed to the handler. Job types
without a registered schema carry a plain JSON mapping.
"""

from __future__ import annotations

import json
from dataclasses import MISSING, asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .models import JobType, job_type_value
from .utils import from_iso

CLEANUP_TABLES = frozenset(
    {"jobs", "digests", "notifications", "sessions", "webhook_deliveries", "api_keys"}
)
HEALTH_CHECKS = frozenset(
    {"database", "memory", "disk", "jobs", "external_apis", "github_api", "notification_services"}
)
SUMMARY_TYPES = frozenset({"concise", "detailed"})
SUMMARY_STYLES = frozenset({"concise", "frontend", "engaging-story", "executive", "technical", "custom"})
NOTIFICATION_CHANNELS = frozenset({"email", "slack", "webhook"})


def _fail(message: str) -> None:
    raise ValidationError(message)


def _check_type(name: str, value: object, expected: type | tuple[type, ...], *, optional: bool = False) -> None:
    if value is None and optional:
        return
    # bool is an int subclass; reject it where a number is expected
    if isinstance(value, bool) and expected in (int, (int, float)):
        _fail(f"`{name}` must be {_type_name(expected)}")
    if not isinstance(value, expected):
        _fail(f"`{name}` must be {_type_name(expected)}")


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(item.__name__ for item in expected)
    return expected.__name__


def _check_iso(name: str, value: object) -> None:
    _check_type(name, value, str)
    try:
        datetime.fromisoformat(str(value))
    except ValueError:
        _fail(f"`{name}` must be an ISO-8601 timestamp")


def _check_str_list(name: str, value: object, *, allow_empty: bool = False) -> None:
    _check_type(name, value, list)
    if not allow_empty and not value:
        _fail(f"`{name}` must not be empty")
    for item in value:  # type: ignore[union-attr]
        if not isinstance(item, str) or not item:
            _fail(f"`{name}` must contain non-empty strings")


@dataclass(slots=True)
class DigestGenerationPayload:
    repo_id: int
    date_from: str
    date_to: str
    include_prs: bool = True
    include_issues: bool = False
    include_commits: bool = False
    summary_type: str = "concise"
    summary_style: str | None = None
    custom_prompt: str | None = None
    notify_users: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_type("repo_id", self.repo_id, int)
        _check_iso("date_from", self.date_from)
        _check_iso("date_to", self.date_to)
        if from_iso(self.date_from) > from_iso(self.date_to):
            _fail("`date_from` must not be after `date_to`")
        for name in ("include_prs", "include_issues", "include_commits"):
            _check_type(name, getattr(self, name), bool)
        if self.summary_type not in SUMMARY_TYPES:
            _fail(f"`summary_type` must be one of {sorted(SUMMARY_TYPES)}")
        if self.summary_style is not None and self.summary_style not in SUMMARY_STYLES:
            _fail(f"`summary_style` must be one of {sorted(SUMMARY_STYLES)}")
        if self.summary_style == "custom" and not self.custom_prompt:
            _fail("`custom_prompt` is required when `summary_style` is custom")
        _check_type("notify_users", self.notify_users, list)
        for user_id in self.notify_users:
            _check_type("notify_users[]", user_id, int)


@dataclass(slots=True)
class RepositorySyncPayload:
    repo_id: int
    full_sync: bool = False
    since: str | None = None

    def __post_init__(self) -> None:
        _check_type("repo_id", self.repo_id, int)
        _check_type("full_sync", self.full_sync, bool)
        if self.since is not None:
            _check_iso("since", self.since)


@dataclass(slots=True)
class WebhookProcessingPayload:
    event: str
    delivery_id: str
    body: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_type("event", self.event, str)
        _check_type("delivery_id", self.delivery_id, str)
        _check_type("body", self.body, dict)
        if not self.event:
            _fail("`event` must not be empty")


@dataclass(slots=True)
class NotificationPayload:
    channel: str
    recipients: list[str]
    message: str
    subject: str | None = None
    template: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    digest_id: int | None = None

    def __post_init__(self) -> None:
        if self.channel not in NOTIFICATION_CHANNELS:
            _fail(f"`channel` must be one of {sorted(NOTIFICATION_CHANNELS)}")
        _check_str_list("recipients", self.recipients)
        _check_type("message", self.message, str)
        if not self.message.strip():
            _fail("`message` must not be empty")
        _check_type("subject", self.subject, str, optional=True)
        _check_type("template", self.template, str, optional=True)
        _check_type("data", self.data, dict)
        _check_type("digest_id", self.digest_id, int, optional=True)


@dataclass(slots=True)
class CleanupPayload:
    target_table: str
    older_than_days: int
    batch_size: int = 100
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.target_table not in CLEANUP_TABLES:
            _fail(f"`target_table` must be one of {sorted(CLEANUP_TABLES)}")
        _check_type("older_than_days", self.older_than_days, int)
        if self.older_than_days < 0:
            _fail("`older_than_days` must be >= 0")
        _check_type("batch_size", self.batch_size, int)
        if not 1 <= self.batch_size <= 10000:
            _fail("`batch_size` must be between 1 and 10000")
        _check_type("dry_run", self.dry_run, bool)


@dataclass(slots=True)
class HealthCheckPayload:
    checks: list[str]
    alert_on_failure: bool = False
    alert_recipients: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_str_list("checks", self.checks)
        unknown = sorted(set(self.checks) - HEALTH_CHECKS)
        if unknown:
            _fail(f"unknown health checks: {', '.join(unknown)}")
        _check_type("alert_on_failure", self.alert_on_failure, bool)
        _check_str_list("alert_recipients", self.alert_recipients, allow_empty=not self.alert_on_failure)


@dataclass(slots=True)
class WebhookDeliveryPayload:
    webhook_config_id: int
    event: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_type("webhook_config_id", self.webhook_config_id, int)
        _check_type("event", self.event, str)
        _check_type("payload", self.payload, dict)


@dataclass(slots=True)
class DataSyncPayload:
    source: str
    destination: str
    entity_type: str
    filters: dict[str, Any] = field(default_factory=dict)
    batch_size: int = 100

    def __post_init__(self) -> None:
        for name in ("source", "destination", "entity_type"):
            value = getattr(self, name)
            _check_type(name, value, str)
            if not value:
                _fail(f"`{name}` must not be empty")
        _check_type("filters", self.filters, dict)
        _check_type("batch_size", self.batch_size, int)
        if self.batch_size < 1:
            _fail("`batch_size` must be >= 1")


@dataclass(slots=True)
class BackupPayload:
    tables: list[str]
    destination: str
    compression: bool = True
    retention_days: int | None = None

    def __post_init__(self) -> None:
        _check_str_list("tables", self.tables)
        _check_type("destination", self.destination, str)
        _check_type("compression", self.compression, bool)
        _check_type("retention_days", self.retention_days, int, optional=True)


PAYLOAD_SCHEMAS: dict[str, type] = {
    JobType.DIGEST_GENERATION.value: DigestGenerationPayload,
    JobType.REPOSITORY_SYNC.value: RepositorySyncPayload,
    JobType.WEBHOOK_PROCESSING.value: WebhookProcessingPayload,
    JobType.NOTIFICATION.value: NotificationPayload,
    JobType.CLEANUP.value: CleanupPayload,
    JobType.HEALTH_CHECK.value: HealthCheckPayload,
    JobType.WEBHOOK_DELIVERY.value: WebhookDeliveryPayload,
    JobType.DATA_SYNC.value: DataSyncPayload,
    JobType.BACKUP.value: BackupPayload,
}


def _build(schema: type, payload: dict[str, Any]) -> Any:
    known = {item.name for item in fields(schema)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValidationError(f"unknown payload fields for {schema.__name__}: {', '.join(unknown)}")
    missing = [
        item.name
        for item in fields(schema)
        if item.default is MISSING and item.default_factory is MISSING and item.name not in payload
    ]
    if missing:
        raise ValidationError(f"missing payload fields for {schema.__name__}: {', '.join(missing)}")
    return schema(**payload)


def validate_payload(job_type: JobType | str, payload: object) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a mapping")
    schema = PAYLOAD_SCHEMAS.get(job_type_value(job_type))
    if schema is None:
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"payload is not JSON serializable: {exc}") from exc
        return dict(payload)
    return asdict(_build(schema, payload))


def parse_payload(job_type: JobType | str, payload: dict[str, Any]) -> Any:
    schema = PAYLOAD_SCHEMAS.get(job_type_value(job_type))
    if schema is None:
        return dict(payload)
    return _build(schema, payload)
