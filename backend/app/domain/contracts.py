from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _id_to_str(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


def _optional_id(value: Any) -> Any:
    if value == "":
        return None
    return _id_to_str(value)


ExternalId = Annotated[str, BeforeValidator(_id_to_str)]
OptionalExternalId = Annotated[Optional[str], BeforeValidator(_optional_id)]


class StagedRecord(BaseModel):
    """One line of a staged JSONL file. Field names are camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    _payload: Optional[Dict[str, Any]] = PrivateAttr(default=None)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        record = cls.model_validate(payload)
        record._payload = payload
        return record

    @property
    def raw_payload(self) -> Dict[str, Any]:
        if self._payload is not None:
            return self._payload
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TimestampedRecord(StagedRecord):
    @field_validator("created_at", "updated_at", mode="after", check_fields=False)
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class GroupRecord(StagedRecord):
    external_id: ExternalId
    name: str


class OrganizationRecord(StagedRecord):
    external_id: ExternalId
    name: str
    domains: List[str] = []


class CustomerRecord(StagedRecord):
    external_id: ExternalId
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    org_id: OptionalExternalId = None
    role: Optional[str] = None

    @model_validator(mode="after")
    def _default_name(self) -> "CustomerRecord":
        if not self.name:
            self.name = self.email or self.external_id
        return self


class BrandRecord(StagedRecord):
    external_id: ExternalId
    name: str
    raw: Optional[Dict[str, Any]] = None


class TicketFormRecord(StagedRecord):
    external_id: ExternalId
    name: str
    active: bool = True
    position: Optional[int] = None
    field_ids: List[Any] = []
    raw: Optional[Dict[str, Any]] = None


class CustomFieldRecord(StagedRecord):
    external_id: ExternalId
    object_type: str = "ticket"
    name: str
    field_type: str = "text"
    options: Optional[List[Any]] = None
    required: bool = False


class ViewRecord(StagedRecord):
    external_id: ExternalId
    name: str
    query: Any = {}
    active: bool = True


class SlaPolicyRecord(StagedRecord):
    external_id: ExternalId
    name: str
    enabled: bool = True
    targets: Any = None
    schedules: Any = None


class TicketRecord(TimestampedRecord):
    id: OptionalExternalId = None
    external_id: ExternalId
    source: Optional[str] = None
    subject: str = ""
    status: Optional[str] = None
    priority: Optional[str] = None
    requester: OptionalExternalId = None
    assignee: OptionalExternalId = None
    group_id: OptionalExternalId = None
    brand_id: OptionalExternalId = None
    ticket_form_id: OptionalExternalId = None
    tags: List[str] = []
    created_at: datetime
    updated_at: datetime
    custom_fields: Optional[Dict[str, Any]] = None

    @property
    def reference_keys(self) -> List[str]:
        # Children point at the staging id when present, otherwise the external id.
        keys = [self.external_id]
        if self.id and self.id != self.external_id:
            keys.insert(0, self.id)
        return keys


class AttachmentRecord(StagedRecord):
    id: OptionalExternalId = None
    external_id: OptionalExternalId = None
    filename: str = "attachment"
    size: int = 0
    content_type: Optional[str] = None
    content_url: Optional[str] = None

    @model_validator(mode="after")
    def _require_key(self) -> "AttachmentRecord":
        if not (self.external_id or self.id):
            raise ValueError("attachment needs an id or externalId")
        return self

    @property
    def key(self) -> str:
        return self.external_id or self.id or ""


class MessageRecord(TimestampedRecord):
    id: OptionalExternalId = None
    external_id: OptionalExternalId = None
    ticket_id: ExternalId
    author: OptionalExternalId = None
    body: str = ""
    body_html: Optional[str] = None
    type: Literal["reply", "note", "system"] = "reply"
    created_at: datetime
    attachments: List[AttachmentRecord] = []

    @model_validator(mode="after")
    def _require_key(self) -> "MessageRecord":
        if not (self.id or self.external_id):
            raise ValueError("message needs an id or externalId")
        return self

    @property
    def key(self) -> str:
        return self.id or self.external_id or ""


class AuditEventRecord(TimestampedRecord):
    external_id: ExternalId
    ticket_id: ExternalId
    author_id: OptionalExternalId = None
    event_type: str
    created_at: datetime
    raw: Optional[Dict[str, Any]] = None


class CsatRatingRecord(TimestampedRecord):
    external_id: ExternalId
    ticket_id: ExternalId
    rating: int
    comment: Optional[str] = None
    created_at: datetime


class TimeEntryRecord(TimestampedRecord):
    external_id: ExternalId
    ticket_id: ExternalId
    agent_id: OptionalExternalId = None
    minutes: int
    note: Optional[str] = None
    created_at: datetime


class KbArticleRecord(StagedRecord):
    external_id: ExternalId
    title: str
    body: str = ""
    category_path: List[str] = []


class RuleRecord(StagedRecord):
    external_id: ExternalId
    type: Literal["macro", "trigger", "automation", "sla"]
    title: str
    conditions: Any = None
    actions: Any = None
    active: bool = True


# entity -> (staged file, record contract)
STAGED_FILES: Dict[str, tuple[str, Type[StagedRecord]]] = {
    "groups": ("groups.jsonl", GroupRecord),
    "organizations": ("organizations.jsonl", OrganizationRecord),
    "customers": ("customers.jsonl", CustomerRecord),
    "brands": ("brands.jsonl", BrandRecord),
    "ticket_forms": ("ticket_forms.jsonl", TicketFormRecord),
    "custom_fields": ("custom_fields.jsonl", CustomFieldRecord),
    "views": ("views.jsonl", ViewRecord),
    "sla_policies": ("sla_policies.jsonl", SlaPolicyRecord),
    "tickets": ("tickets.jsonl", TicketRecord),
    "audit_events": ("audit_events.jsonl", AuditEventRecord),
    "csat_ratings": ("csat_ratings.jsonl", CsatRatingRecord),
    "time_entries": ("time_entries.jsonl", TimeEntryRecord),
    "messages": ("messages.jsonl", MessageRecord),
    "kb_articles": ("kb_articles.jsonl", KbArticleRecord),
    "rules": ("rules.jsonl", RuleRecord),
}

# staged entity -> manifest count key
MANIFEST_COUNT_ENTITIES = {
    "tickets": "tickets",
    "messages": "messages",
    "customers": "customers",
    "organizations": "organizations",
    "kb_articles": "kbArticles",
    "rules": "rules",
}


@dataclass
class IngestBatch:
    groups: List[GroupRecord] = field(default_factory=list)
    organizations: List[OrganizationRecord] = field(default_factory=list)
    customers: List[CustomerRecord] = field(default_factory=list)
    brands: List[BrandRecord] = field(default_factory=list)
    ticket_forms: List[TicketFormRecord] = field(default_factory=list)
    custom_fields: List[CustomFieldRecord] = field(default_factory=list)
    views: List[ViewRecord] = field(default_factory=list)
    sla_policies: List[SlaPolicyRecord] = field(default_factory=list)
    tickets: List[TicketRecord] = field(default_factory=list)
    audit_events: List[AuditEventRecord] = field(default_factory=list)
    csat_ratings: List[CsatRatingRecord] = field(default_factory=list)
    time_entries: List[TimeEntryRecord] = field(default_factory=list)
    messages: List[MessageRecord] = field(default_factory=list)
    kb_articles: List[KbArticleRecord] = field(default_factory=list)
    rules: List[RuleRecord] = field(default_factory=list)
    discarded: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_payloads(cls, payloads: Dict[str, List[Dict[str, Any]]]) -> "IngestBatch":
        """Build a batch from already-decoded dicts; invalid records raise."""
        batch = cls()
        for entity, items in payloads.items():
            _, contract = STAGED_FILES[entity]
            getattr(batch, entity).extend(contract.from_payload(item) for item in items)
        return batch
