"""
Metering: the event ledger, ingestion and aggregation.
"""

from meterly.metering.aggregation import AggregationEngine, reduce_events
from meterly.metering.ingestion import EventIngestionService, IngestOutcome
from meterly.metering.ledger import EventLedger

__all__ = [
    "AggregationEngine",
    "EventIngestionService",
    "EventLedger",
    "IngestOutcome",
    "reduce_events",
]
