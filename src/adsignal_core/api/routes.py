"""FastAPI routes for event ingestion, attribution and tracking metrics."""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationError

from ..attribution.backfill import backfill_days_default, bulk_backfill
from ..attribution.resolver import DEFAULT_RESOLVER_CONFIG, attribute_event, resolve_attribution
from ..events.models import PURCHASE_EVENT, EntityIds, IngestResult, MatchSignals, TrackingEventDraft
from ..events.normalize import (
    draft_from_collect_payload,
    draft_from_shopify_order,
    draft_from_shopify_refund,
)
from ..events.schema import open_database
from ..events.store import EventStore
from ..events.timestamps import to_utc
from ..exceptions import EventNotFoundError, InvalidPayloadError
from ..metrics.aggregator import aggregate_entity_metrics, coverage_report, rollup_entity_metrics
from .auth import ApiKeyScope, require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["tracking"])

DEFAULT_METRICS_DAYS = 7


def get_event_store() -> Iterator[EventStore]:
    """Request-scoped store; the connection is closed after the response."""
    with open_database() as conn:
        yield EventStore(conn)


def _time_range(since: Optional[datetime], until: Optional[datetime]) -> tuple[datetime, datetime]:
    until = to_utc(until) if until else datetime.now(timezone.utc)
    since = to_utc(since) if since else until - timedelta(days=DEFAULT_METRICS_DAYS)
    if since > until:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="since must not be after until",
        )
    return since, until


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


class EventIngestRequest(BaseModel):
    """Inbound event in one of the supported payload shapes."""

    store_id: str = Field(..., min_length=1, description="Owning store")
    kind: Literal["collect", "shopify_order", "shopify_refund"] = Field(
        "collect", description="Payload shape"
    )
    payload: dict[str, Any] = Field(..., description="Raw collect body, order or refund")
    order_id: Optional[str] = Field(None, description="Refunded order (shopify_refund only)")
    resolve: bool = Field(
        True, description="Attribute unattributed purchases right after ingestion"
    )


class EventIngestResponse(BaseModel):
    event_id: Optional[str] = Field(None, description="Stored event id")
    inserted: bool
    updated: bool
    attribution: Optional[dict[str, Any]] = Field(
        None, description="Resolver decision for purchases, when run"
    )


def _build_draft(body: EventIngestRequest, request: Request) -> TrackingEventDraft:
    if body.kind == "shopify_order":
        return draft_from_shopify_order(body.store_id, body.payload)
    if body.kind == "shopify_refund":
        return draft_from_shopify_refund(body.store_id, body.order_id, body.payload)

    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else None)
    return draft_from_collect_payload(
        body.store_id,
        body.payload,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
    )


@router.post(
    "/events",
    response_model=EventIngestResponse,
    summary="Ingest a tracking event",
)
def ingest_event(
    body: EventIngestRequest,
    request: Request,
    scope: ApiKeyScope = Depends(require_api_key),
    store: EventStore = Depends(get_event_store),
) -> EventIngestResponse:
    """Normalize, store and (for purchases) attribute one event.

    Returns 400 for unusable payloads and 422 when the normalized event fails
    validation.
    """
    scope.require_store(body.store_id)

    try:
        draft = _build_draft(body, request)
    except InvalidPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        )

    result: IngestResult = store.ingest(draft)

    attribution = None
    if body.resolve and draft.event_name == PURCHASE_EVENT and draft.event_id:
        decision = attribute_event(store, draft.store_id, draft.event_id)
        attribution = decision.to_dict()

    return EventIngestResponse(
        event_id=draft.event_id,
        inserted=result.inserted,
        updated=result.updated,
        attribution=attribution,
    )


# ----------------------------------------------------------------------
# Attribution
# ----------------------------------------------------------------------


class ResolveRequest(BaseModel):
    """Either a stored purchase (event_id) or ad-hoc purchase signals."""

    store_id: str = Field(..., min_length=1)
    event_id: Optional[str] = Field(
        None, description="Stored purchase to resolve and update in place"
    )
    occurred_at: Optional[datetime] = Field(
        None, description="Purchase time (required without event_id)"
    )
    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None
    proximity_window_minutes: Optional[int] = Field(
        None, ge=1, description="Override the configured proximity window"
    )


class ResolveResponse(BaseModel):
    tier: str = Field(..., description="direct|click_id|signal_match|time_proximity|none")
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    confidence: float
    evidence: dict[str, Any]


@router.post(
    "/attribution/resolve",
    response_model=ResolveResponse,
    summary="Resolve attribution for one purchase",
)
def resolve_purchase(
    body: ResolveRequest,
    scope: ApiKeyScope = Depends(require_api_key),
    store: EventStore = Depends(get_event_store),
) -> ResolveResponse:
    scope.require_store(body.store_id)

    config = None
    if body.proximity_window_minutes is not None:
        config = {**DEFAULT_RESOLVER_CONFIG, "proximity_window_minutes": body.proximity_window_minutes}

    if body.event_id:
        try:
            decision = attribute_event(store, body.store_id, body.event_id, config)
        except EventNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    else:
        if body.occurred_at is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="occurred_at is required when event_id is not given",
            )
        decision = resolve_attribution(
            store,
            body.store_id,
            body.occurred_at,
            MatchSignals(body.click_id, body.fbc, body.fbp, body.email_hash),
            entity_ids=EntityIds(),
            config=config,
        )

    return ResolveResponse(**decision.to_dict())


class BackfillJobRequest(BaseModel):
    store_id: str = Field(..., min_length=1)
    since: Optional[datetime] = Field(None, description="Earliest purchase time")
    days: Optional[int] = Field(
        None, ge=1, le=365, description="Lookback in days when since is not given"
    )


class BackfillJobResponse(BaseModel):
    """Immediate response for queued job."""

    job_id: str = Field(..., description="Server-generated job ID")
    status: str = Field(..., description="Job status (always 'queued' on acceptance)")
    store_id: str
    since: datetime


def _run_backfill_job(job_id: str, store_id: str, since: datetime) -> None:
    """Background task: bulk backfill on its own connection.

    Errors are logged, never raised to the server.
    """
    try:
        with open_database() as conn:
            changed = bulk_backfill(EventStore(conn), store_id, since)
        logger.info("Backfill job %s completed: store=%s updated=%s", job_id, store_id, changed)
    except Exception as exc:
        logger.error(
            "Backfill job %s (store=%s) failed with exception: %s",
            job_id,
            store_id,
            exc,
            exc_info=True,
        )


@router.post(
    "/attribution/backfill",
    response_model=BackfillJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a bulk attribution backfill",
)
def create_backfill_job(
    body: BackfillJobRequest,
    background_tasks: BackgroundTasks,
    scope: ApiKeyScope = Depends(require_api_key),
) -> BackfillJobResponse:
    """Returns immediately with job_id; the backfill runs in the background."""
    scope.require_store(body.store_id)

    if body.since is not None:
        since = to_utc(body.since)
    else:
        days = body.days or backfill_days_default()
        since = datetime.now(timezone.utc) - timedelta(days=days)

    job_id = str(uuid.uuid4())
    background_tasks.add_task(_run_backfill_job, job_id, body.store_id, since)

    logger.info("Queued backfill job: job_id=%s, store=%s, since=%s", job_id, body.store_id, since)

    return BackfillJobResponse(job_id=job_id, status="queued", store_id=body.store_id, since=since)


# ----------------------------------------------------------------------
# Metrics
# ----------------------------------------------------------------------


class EntitySummaryModel(BaseModel):
    results: int
    purchases: int
    purchase_value: float


class EntityMetricsResponse(BaseModel):
    since: datetime
    until: datetime
    rows: list[dict[str, Any]]
    campaigns: dict[str, EntitySummaryModel]
    adsets: dict[str, EntitySummaryModel]
    ads: dict[str, EntitySummaryModel]


class UnattributedPurchase(BaseModel):
    event_id: Optional[str]
    order_id: Optional[str]
    occurred_at: str
    value: Optional[float]
    currency: Optional[str]


class CoverageResponse(BaseModel):
    since: datetime
    until: datetime
    total_purchases: int
    mapped_purchases: int
    mapped_campaign: int
    mapped_adset: int
    mapped_ad: int
    coverage_percent: float
    recent_unattributed: list[UnattributedPurchase]


def _summaries(bucket: dict) -> dict[str, EntitySummaryModel]:
    return {
        entity_id: EntitySummaryModel(
            results=summary.results,
            purchases=summary.purchases,
            purchase_value=round(summary.purchase_value, 2),
        )
        for entity_id, summary in bucket.items()
    }


@router.get(
    "/metrics/entities",
    response_model=EntityMetricsResponse,
    summary="Conversions per campaign, ad set and ad",
)
def entity_metrics(
    store_id: str = Query(..., min_length=1),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    scope: ApiKeyScope = Depends(require_api_key),
    store: EventStore = Depends(get_event_store),
) -> EntityMetricsResponse:
    scope.require_store(store_id)
    since, until = _time_range(since, until)
    rows = aggregate_entity_metrics(store, store_id, since, until)
    rollup = rollup_entity_metrics(rows)

    return EntityMetricsResponse(
        since=since,
        until=until,
        rows=[row.to_dict() for row in rows],
        campaigns=_summaries(rollup.campaigns),
        adsets=_summaries(rollup.adsets),
        ads=_summaries(rollup.ads),
    )


@router.get(
    "/metrics/coverage",
    response_model=CoverageResponse,
    summary="Attribution coverage of purchases",
)
def attribution_coverage(
    store_id: str = Query(..., min_length=1),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    unattributed_limit: int = Query(25, ge=1, le=200),
    scope: ApiKeyScope = Depends(require_api_key),
    store: EventStore = Depends(get_event_store),
) -> CoverageResponse:
    scope.require_store(store_id)
    since, until = _time_range(since, until)
    coverage = coverage_report(store, store_id, since, until)
    recent = store.recent_unattributed_purchases(store_id, since, until, unattributed_limit)

    return CoverageResponse(
        since=since,
        until=until,
        total_purchases=coverage.total_purchases,
        mapped_purchases=coverage.mapped_purchases,
        mapped_campaign=coverage.mapped_campaign,
        mapped_adset=coverage.mapped_adset,
        mapped_ad=coverage.mapped_ad,
        coverage_percent=coverage.coverage_percent,
        recent_unattributed=[
            UnattributedPurchase(
                event_id=event.event_id,
                order_id=event.order_id,
                occurred_at=event.occurred_at,
                value=event.value,
                currency=event.currency,
            )
            for event in recent
        ],
    )
