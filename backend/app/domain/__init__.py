"""Staged record contracts and shared types."""

from backend.app.domain.contracts import (  # noqa: F401
    STAGED_FILES,
    AttachmentRecord,
    AuditEventRecord,
    BrandRecord,
    CsatRatingRecord,
    CustomerRecord,
    CustomFieldRecord,
    GroupRecord,
    IngestBatch,
    KbArticleRecord,
    MessageRecord,
    OrganizationRecord,
    RuleRecord,
    SlaPolicyRecord,
    StagedRecord,
    TicketFormRecord,
    TicketRecord,
    TimeEntryRecord,
    ViewRecord,
)
