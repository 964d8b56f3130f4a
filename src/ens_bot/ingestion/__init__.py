"""
Ingestion Layer - Source adapters and the shared ingestion pipeline.

Sources:
    - SalesPoller / BidsPoller: cursor-driven REST polling of the marketplace
    - WebhookServer: QuickNode pushes (Seaport sales, registrations)
    - OfferFeed: websocket offer_made events

Every source hands candidates to IngestionPipeline.submit(), which runs
dedup -> filter -> enrich -> store and reports stored / duplicate /
filtered(reason).

Usage:
    from ens_bot.ingestion import (
        Deduplicator,
        IngestionPipeline,
        MarketplaceClient,
        SalesPoller,
    )

    pipeline = IngestionPipeline(dedup, filters, enricher, records)
    poller = SalesPoller(cursors, pipeline, client)
    result = await poller.poll()
"""

from .client import MarketplaceAPIError, MarketplaceClient, Page, RateLimitError
from .dedup import OUTCOME_DUPLICATE, OUTCOME_STORED, AdmitResult, Deduplicator
from .metrics import ErrorRecord, IngestionMetrics, MetricsCollector
from .models import (
    BidCandidate,
    CandidateEvent,
    PayloadValidationError,
    RegistrationCandidate,
    SaleCandidate,
)
from .pipeline import IngestionPipeline, SubmitOutcome, SubmitStatus
from .pollers import BidsPoller, PagedPollAdapter, PollAdapter, PollResult, SalesPoller
from .push import PushAdapter, parse_name_registered, parse_offer_event, parse_seaport_order
from .webhook import WebhookServer, create_webhook_app
from .websocket import FeedState, OfferFeed

__all__ = [
    # Models
    "BidCandidate",
    "CandidateEvent",
    "PayloadValidationError",
    "RegistrationCandidate",
    "SaleCandidate",
    # Client
    "MarketplaceAPIError",
    "MarketplaceClient",
    "Page",
    "RateLimitError",
    # Pipeline
    "AdmitResult",
    "Deduplicator",
    "IngestionPipeline",
    "OUTCOME_DUPLICATE",
    "OUTCOME_STORED",
    "SubmitOutcome",
    "SubmitStatus",
    # Metrics
    "ErrorRecord",
    "IngestionMetrics",
    "MetricsCollector",
    # Adapters
    "BidsPoller",
    "FeedState",
    "OfferFeed",
    "PagedPollAdapter",
    "PollAdapter",
    "PollResult",
    "PushAdapter",
    "SalesPoller",
    "WebhookServer",
    "create_webhook_app",
    "parse_name_registered",
    "parse_offer_event",
    "parse_seaport_order",
]
