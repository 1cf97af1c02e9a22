"""Type definitions for pipeline operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from pricetrail.models import Listing


class RunStatus(str, Enum):
    """Status of a retailer run."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    SKIPPED = "SKIPPED"


class MatchTier(str, Enum):
    """Which identity tier resolved a listing."""

    UNMATCHED = "UNMATCHED"
    TIER1 = "TIER1"  # (retailer, external id)
    TIER2 = "TIER2"  # (retailer, normalized url)
    TIER3 = "TIER3"  # (retailer, normalized name, brand)


@dataclass(frozen=True)
class MappingRef:
    """Existing mapping a listing resolved to."""

    mapping_id: int
    product_id: int
    external_id: str | None
    url: str


@dataclass
class PreparedListing:
    """Listing with its identity keys normalized."""

    listing: Listing
    external_id: str | None
    url: str
    normalized_name: str
    brand_key: str
    unit: str | None
    unit_quantity: Decimal | None

    @property
    def dedupe_key(self) -> str:
        if self.external_id:
            return f"ext:{self.external_id}"
        return f"url:{self.url}"


@dataclass(frozen=True)
class Resolution:
    """Tagged resolver outcome: UNMATCHED carries no target, every tier does."""

    item: PreparedListing
    tier: MatchTier
    target: MappingRef | None = None

    def __post_init__(self):
        if (self.tier is MatchTier.UNMATCHED) != (self.target is None):
            raise ValueError(f"{self.tier.value} resolution with target={self.target!r}")

    @property
    def matched(self) -> bool:
        return self.tier is not MatchTier.UNMATCHED


@dataclass(frozen=True)
class IngestedListing:
    """A listing durably written and the mapping it ended up on."""

    listing: Listing
    mapping_id: int
    tier: MatchTier
    unit: str | None = None
    unit_quantity: Decimal | None = None


@dataclass
class IngestResult:
    """Outcome of one committed ingest batch."""

    retailer_id: int
    records: list[IngestedListing] = field(default_factory=list)
    failed: int = 0  # validation failures, never written
    duplicates: int = 0  # collapsed within the batch
    created: int = 0
    updated: int = 0
    errors: list[dict] = field(default_factory=list)

    @property
    def mapping_ids(self) -> list[int]:
        """Final mapping ids, in listing order."""
        return [record.mapping_id for record in self.records]


@dataclass
class RunResult:
    """Result of one retailer run."""

    retailer_id: int
    retailer_name: str
    run_id: str
    status: RunStatus
    listings_seen: int = 0
    listings_ingested: int = 0
    listings_failed: int = 0
    products_created: int = 0
    mappings_updated: int = 0
    prices_recorded: int = 0
    marked_unavailable: int = 0
    batches_committed: int = 0
    message: str = ""
    errors: list[dict] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        """Check if the run committed anything."""
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)
