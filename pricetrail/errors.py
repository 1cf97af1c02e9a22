"""Exception types for PriceTrail.

Only genuine failures are exceptions. An unmatched listing is a
``MatchTier.UNMATCHED`` resolution, an unsupported unit is a ``None``
per-unit price and a suspicious exchange rate is a ``RateAnomaly`` record.
"""

from __future__ import annotations


class PriceTrailError(Exception):
    """Base class for all PriceTrail errors."""


class BatchWriteFailure(PriceTrailError):
    """An ingest or price write for one batch was rolled back."""

    def __init__(self, retailer_id: int, batch_number: int, size: int, message: str):
        super().__init__(
            f"Batch {batch_number} for retailer {retailer_id} "
            f"({size} listings) rolled back: {message}"
        )
        self.retailer_id = retailer_id
        self.batch_number = batch_number
        self.size = size


class RateFetchFailure(PriceTrailError):
    """The external exchange-rate source could not be used."""


class ReconciliationFailure(PriceTrailError):
    """The reconciliation transaction was aborted and must be retried wholesale."""


class RetailerBusy(ReconciliationFailure):
    """Another job holds the retailer lock."""

    def __init__(self, retailer_id: int):
        super().__init__(f"Retailer {retailer_id} is locked by another job")
        self.retailer_id = retailer_id


class LinkTargetNotFound(PriceTrailError, LookupError):
    """A product or canonical product referenced by a link call does not exist."""


class UnsupportedDialect(PriceTrailError):
    """The database has no upsert the ingestor can use."""

    def __init__(self, dialect: str):
        super().__init__(f"Mapping upsert not supported on {dialect}")
        self.dialect = dialect
