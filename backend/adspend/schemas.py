"""
Shared domain types — metrics snapshots, budget targets, decision states and
result objects passed between the services and the API layer.
"""

import enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

LEGACY_CAMPAIGN_PREFIX = "campaign_"


class TargetKind(str, enum.Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"


class TargetRef(BaseModel):
    """A budget-carrying object on the platform: a campaign (CBO) or an ad set."""
    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    id: str = Field(min_length=1)

    @classmethod
    def adset(cls, adset_id: str) -> "TargetRef":
        return cls(kind=TargetKind.ADSET, id=adset_id)

    @classmethod
    def campaign(cls, campaign_id: str) -> "TargetRef":
        return cls(kind=TargetKind.CAMPAIGN, id=campaign_id)

    def to_legacy_key(self) -> str:
        """Single-column key used by older audit rows (campaigns carry a prefix)."""
        if self.kind == TargetKind.CAMPAIGN:
            return f"{LEGACY_CAMPAIGN_PREFIX}{self.id}"
        return self.id

    @classmethod
    def from_legacy_key(cls, key: str) -> "TargetRef":
        if key.startswith(LEGACY_CAMPAIGN_PREFIX):
            return cls.campaign(key[len(LEGACY_CAMPAIGN_PREFIX):])
        return cls.adset(key)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class MetricsSnapshot(BaseModel):
    """
    Metrics of one target at a point in time. Budget and ROAS are always
    known; spend, sales and profit may be missing for an entity.
    """
    model_config = ConfigDict(frozen=True)

    budget: float
    roas: float = 0.0
    spend: Optional[float] = None
    sales: Optional[float] = None
    profit: Optional[float] = None


class DecisionStatus(str, enum.Enum):
    KEEP = "keep"
    WARNING = "warning"
    DECISION_NEEDED = "decision-needed"
    # Only produced by explicit user/bulk actions, never by the evaluator
    INCREASE = "increase"
    DECREASE = "decrease"


class BudgetEntity(BaseModel):
    """An ad set or campaign as seen by the bulk action and decision services."""
    target: TargetRef
    name: str = ""
    metrics: MetricsSnapshot
    parent_managed: bool = False  # campaign budget optimization: ad-set budget is not authoritative
    active: bool = True

    @property
    def budget(self) -> float:
        return self.metrics.budget


class SyncCounters(BaseModel):
    """Outcome counters of a reconciliation run."""
    synced: int = 0
    errors: int = 0
    skipped: int = 0
    processed: int = 0

    def merge(self, other: "SyncCounters") -> "SyncCounters":
        self.synced += other.synced
        self.errors += other.errors
        self.skipped += other.skipped
        self.processed += other.processed
        return self


class AuditEntry(BaseModel):
    """A budget change about to be (or already) appended to the audit log."""
    model_config = ConfigDict(frozen=True)

    target: TargetRef
    previous_budget: float
    new_budget: float
    reason: Optional[str] = None
    actor: Optional[str] = None
    modified_at: datetime
    snapshot: MetricsSnapshot


class ModifiedEntity(BaseModel):
    name: str
    old_budget: float
    new_budget: float


class BulkActionResult(BaseModel):
    success: int = 0
    failed: int = 0
    unchanged: int = 0
    modified: list[ModifiedEntity] = Field(default_factory=list)
    failures: list[dict] = Field(default_factory=list)
    audit_logged: bool = True
