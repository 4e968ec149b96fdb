"""Pydantic payloads returned by audit and cleanup runs.

These are the only structures that outlive a reconciliation run. They are
plain data so callers can serialize them with `model_dump(mode="json")`.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from storage_reconciler.models.enums import (
    ActionOutcome,
    DiscrepancyKind,
    ExecutionMode,
    RecordKind,
    SkipReason,
)


class RecordRef(BaseModel):
    """Identity of one relational row."""

    record_kind: RecordKind
    record_id: str


class ActionResult(BaseModel):
    """Outcome of the executor's handling of one discrepancy."""

    key: str
    kind: DiscrepancyKind
    action: str = Field(
        description="'delete_blob' for orphans; 'purge_records' or 'repoint_reference' for phantoms"
    )
    outcome: ActionOutcome
    reason: SkipReason | None = Field(default=None, description="Set when outcome is skipped")
    error: str | None = Field(default=None, description="Underlying cause when outcome is failed")
    size_bytes: int | None = None
    store_keys: list[str] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    records: list[RecordRef] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    target_key: str | None = Field(default=None, description="Key a re-pointed reference now names")
    ledger_recorded: bool | None = Field(
        default=None,
        description="Whether the DELETE usage event was appended (executed orphan deletes only)",
    )


class ExecutionResult(BaseModel):
    """Per-item outcomes of one executor pass.

    Dry runs and executions produce the same shape; in a dry run `succeeded`
    lists the items that would have been acted on.
    """

    mode: ExecutionMode
    succeeded: list[ActionResult] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    failed: list[ActionResult] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    skipped: list[ActionResult] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    cancelled: bool = False

    @property
    def reclaimed_bytes(self) -> int:
        """Measured bytes of successfully handled orphans."""
        return sum(
            item.size_bytes or 0
            for item in self.succeeded
            if item.kind == DiscrepancyKind.ORPHANED
        )

    def keys(self, outcome: ActionOutcome) -> list[str]:
        bucket = {
            ActionOutcome.SUCCEEDED: self.succeeded,
            ActionOutcome.FAILED: self.failed,
            ActionOutcome.SKIPPED: self.skipped,
        }[outcome]
        return [item.key for item in bucket]


class KindSummary(BaseModel):
    """Totals for one discrepancy kind.

    `known_bytes` is measured only. `estimated_unknown_bytes` is a separate
    guess for the unknown-size keys and is never folded into it.
    """

    count: int = 0
    known_bytes: int = 0
    unknown_size_count: int = 0
    record_count: int = 0
    estimated_unknown_bytes: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)  # pyright: ignore[reportUnknownVariableType]


class DiscrepancySample(BaseModel):
    """One discrepancy in a report's bounded sample."""

    kind: DiscrepancyKind
    key: str
    size_bytes: int | None = None
    owner_id: str | None = None
    store_keys: list[str] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    records: list[RecordRef] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]


class UnparsableSample(BaseModel):
    """A relational reference that could not be normalized."""

    record_kind: RecordKind
    record_id: str
    owner_id: str
    reference: str
    reason: str


class UsageSnapshot(BaseModel):
    """Ledger-derived usage at report time."""

    total_bytes: int = 0
    total_files: int = 0
    unknown_size_files: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)  # pyright: ignore[reportUnknownVariableType]
    ledger_only_keys: int = Field(default=0, description="Ledger says present, store does not list")
    unledgered_keys: int = Field(default=0, description="Listed blobs with no recorded upload")


class Diagnostics(BaseModel):
    """Non-fatal findings of a run."""

    unparsable_references: list[UnparsableSample] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    unparsable_blob_keys: list[str] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    external_references: int = 0
    pages_scanned: int = 0


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation run."""

    generated_at: datetime
    scope: list[str] = Field(default_factory=list, description="Key prefixes; empty is the whole store")  # pyright: ignore[reportUnknownVariableType]
    totals: dict[DiscrepancyKind, KindSummary]
    samples: list[DiscrepancySample] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    sample_truncated: bool = False
    usage: UsageSnapshot | None = None
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)
    recommendations: list[str] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]

    @property
    def is_clean(self) -> bool:
        return (
            self.totals[DiscrepancyKind.ORPHANED].count == 0
            and self.totals[DiscrepancyKind.PHANTOM].count == 0
        )


class CleanupOutcome(BaseModel):
    """Result of a cleanup run: the audit it acted on, what it did, and the state after."""

    report: ReconciliationReport = Field(description="Audit taken before any action")
    result: ExecutionResult
    after: ReconciliationReport | None = Field(
        default=None,
        description="Re-audit after an executed cleanup, or the projected state after a dry run. "
        "None if the re-audit failed",
    )
