"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import AlertOut, ConsumerStatus, IngestResponse, ReadingIn, ReadingOut
from datastore.history import HistoryStore, build_default_store
from services.consumer import StreamConsumer, build_default_consumer
from services.errors import ChannelClosedError, StoreError
from services.ingest import IngestService, build_default_ingest

router = APIRouter()


def get_ingest() -> IngestService:
    return build_default_ingest()


def get_store() -> HistoryStore:
    return build_default_store()


def get_consumer() -> StreamConsumer:
    return build_default_consumer()


@router.post(
    "/readings",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=IngestResponse,
    summary="Accept a device reading for storage and rule evaluation.",
)
async def ingest_reading(
    payload: ReadingIn,
    ingest: IngestService = Depends(get_ingest),
) -> IngestResponse:
    try:
        ingest.accept(payload.to_reading())
    except (StoreError, ChannelClosedError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return IngestResponse()


@router.get(
    "/readings/{device_id}",
    response_model=List[ReadingOut],
    summary="Most recent readings of a device, newest first.",
)
async def get_readings(
    device_id: int,
    limit: int = Query(100, ge=1, le=1000),
    store: HistoryStore = Depends(get_store),
) -> List[ReadingOut]:
    try:
        readings = store.recent_readings(device_id, limit)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return [ReadingOut.from_reading(reading) for reading in readings]


@router.get(
    "/alerts",
    response_model=List[AlertOut],
    summary="Most recent alerts, optionally for one device.",
)
async def get_alerts(
    device_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, ge=1, le=1000),
    store: HistoryStore = Depends(get_store),
) -> List[AlertOut]:
    try:
        alerts = store.list_alerts(device_id=device_id, limit=limit)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return [AlertOut.from_alert(alert) for alert in alerts]


@router.get(
    "/stats",
    response_model=ConsumerStatus,
    summary="Rule engine consumer state and counters.",
)
async def get_stats(consumer: StreamConsumer = Depends(get_consumer)) -> ConsumerStatus:
    return ConsumerStatus(
        state=consumer.state.value,
        ack_policy=consumer.ack_policy.name,
        window_size=consumer.cache.capacity,
        cached_devices=len(consumer.cache.devices()),
        counters=consumer.stats.as_dict(),
    )


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
