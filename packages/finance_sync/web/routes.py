"""HTTP routes under ``/api``.

``POST /api/sync`` answers with ``text/event-stream``: one ``progress`` frame
per step and a final ``complete`` or ``error`` frame. Requests that fail
validation or hit a running sync are rejected with a problem document before
the stream opens. The stream is pulled by the response itself, so a slow
client slows the source down; a client that goes away cancels the session.

Database endpoints are plain ``def`` handlers and run in the thread pool.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import date, timedelta
from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.background import BackgroundTask

from .. import api
from ..errors import CredentialValidationError
from ..logging_setup import get_logger
from ..models import DateRange, SyncOptions
from ..orchestrator import SyncOrchestrator, SyncStream
from ..patterns import PatternQuery
from ..settings import SyncSettings
from ..sources import prepare_credential, validate_credential
from .errors import NotFoundError

_logger = get_logger("finance_sync.web")

router = APIRouter(prefix="/api")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class BillingCycleBody(_CamelModel):
    year: int
    month: int = Field(ge=1, le=12)
    start_day: int = Field(default=1, ge=1, le=31)


class SyncOptionsBody(_CamelModel):
    update_category_on_rescrape: bool | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)
    retry_base_delay: float | None = Field(default=None, ge=0)


class SyncRequest(_CamelModel):
    vendor: str
    credential_id: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)
    start_date: date | None = None
    end_date: date | None = None
    continue_from_last: bool = False
    billing_cycle: BillingCycleBody | None = None
    options: SyncOptionsBody = Field(default_factory=SyncOptionsBody)


class CategoryUpdateRequest(_CamelModel):
    description: str
    new_category: str
    create_rule: bool = True


class CategoryMergeRequest(_CamelModel):
    source_categories: list[str] = Field(min_length=1)
    target_category: str


class ExclusionRequest(BaseModel):
    name: str
    account_number: str | None = Field(
        default=None, validation_alias=AliasChoices("account_number", "accountNumber")
    )


def _settings(request: Request) -> SyncSettings:
    return request.app.state.settings


def _orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def _resolve_range(body: SyncRequest, settings: SyncSettings) -> DateRange:
    default_start = date.today() - timedelta(days=settings.default_sync_days)
    try:
        if body.billing_cycle is not None:
            bc = body.billing_cycle
            return DateRange.billing_cycle(bc.year, bc.month, bc.start_day)
        start = body.start_date or default_start
        if body.continue_from_last:
            start = (
                api.get_continuation_start(
                    body.vendor,
                    body.credential_id,
                    fallback=start,
                    database_url=settings.database_url,
                )
                or start
            )
        return DateRange(start=start, end=body.end_date)
    except ValueError as exc:
        raise CredentialValidationError(str(exc)) from exc


async def _frames(stream: SyncStream, request: Request) -> AsyncIterator[str]:
    try:
        async for event in stream:
            yield event.encode()
            if event.is_terminal:
                break
            if await request.is_disconnected():
                _logger.info("http:client_disconnected credential=%s", stream.session.credential_key)
                stream.cancel()
                break
    finally:
        await stream.aclose()


@router.post("/sync")
async def sync(body: SyncRequest, request: Request) -> StreamingResponse:
    settings = _settings(request)
    credential = prepare_credential(body.vendor, body.credentials, credential_id=body.credential_id)
    validate_credential(credential)
    if body.continue_from_last:
        date_range = await asyncio.to_thread(_resolve_range, body, settings)
    else:
        date_range = _resolve_range(body, settings)
    source = request.app.state.source_factory(body.vendor)
    options = SyncOptions(
        update_category_on_rescrape=body.options.update_category_on_rescrape,
        max_retries=body.options.max_retries,
        retry_base_delay=body.options.retry_base_delay,
    )
    stream = _orchestrator(request).start_session(credential, date_range, options, source=source)
    return StreamingResponse(
        _frames(stream, request),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # Frees the credential if the body was never iterated.
        background=BackgroundTask(stream.aclose),
    )


@router.get("/last-transaction-date")
def last_transaction_date(
    request: Request,
    vendor: str,
    credential_id: Annotated[str | None, Query(alias="credentialId")] = None,
) -> dict[str, Any]:
    db_url = _settings(request).database_url
    last = api.get_last_transaction_date(vendor, credential_id, database_url=db_url)
    return {
        "vendor": vendor,
        "lastDate": last.isoformat() if last else None,
        "continueFrom": (last + timedelta(days=1)).isoformat() if last else None,
    }


@router.get("/recurring-payments")
def recurring_payments(
    request: Request,
    pattern_type: Annotated[str | None, Query(alias="type")] = None,
    sort_by: Annotated[str | None, Query(alias="sortBy")] = None,
    sort_order: Annotated[str | None, Query(alias="sortOrder")] = None,
    limit: str | None = None,
    offset: str | None = None,
    frequency: str | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> dict[str, Any]:
    settings = _settings(request)
    query = PatternQuery.parse(
        type=pattern_type,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
        frequency=frequency,
        status=status_filter,
    )
    return api.find_patterns(
        query,
        excluded_categories=settings.recurring_excluded_categories,
        database_url=settings.database_url,
    )


@router.post("/categories/update-by-description")
def update_by_description(body: CategoryUpdateRequest, request: Request) -> dict[str, Any]:
    result = api.update_category(
        body.description,
        body.new_category,
        create_rule=body.create_rule,
        database_url=_settings(request).database_url,
    )
    return {"success": True, **result.model_dump(by_alias=True)}


@router.post("/categories/merge")
def merge_categories(body: CategoryMergeRequest, request: Request) -> dict[str, Any]:
    moved = api.merge_categories(
        body.source_categories, body.target_category, database_url=_settings(request).database_url
    )
    return {"success": True, "transactionsUpdated": moved, "targetCategory": body.target_category}


@router.post("/categories/apply-rules")
def apply_rules(request: Request) -> dict[str, Any]:
    rules, updated = api.apply_rules(database_url=_settings(request).database_url)
    return {"success": True, "rulesApplied": rules, "transactionsUpdated": updated}


@router.get("/non-recurring-exclusions")
def list_exclusions(request: Request) -> dict[str, Any]:
    return {"exclusions": api.list_exclusions(database_url=_settings(request).database_url)}


@router.post("/non-recurring-exclusions", status_code=status.HTTP_201_CREATED)
def add_exclusion(body: ExclusionRequest, request: Request, response: Response) -> dict[str, Any]:
    created = api.add_exclusion(
        body.name, body.account_number, database_url=_settings(request).database_url
    )
    if created["alreadyExisted"]:
        response.status_code = status.HTTP_200_OK
    return created


@router.delete("/non-recurring-exclusions/{exclusion_id}")
def delete_exclusion(exclusion_id: int, request: Request) -> dict[str, Any]:
    if not api.delete_exclusion(exclusion_id, database_url=_settings(request).database_url):
        raise NotFoundError(f"Exclusion {exclusion_id} not found")
    return {"success": True, "id": exclusion_id}


@router.get("/sync-events")
def sync_events(
    request: Request,
    vendor: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> dict[str, Any]:
    events = api.list_sync_events(
        vendor=vendor, limit=limit, database_url=_settings(request).database_url
    )
    return {"events": events}


@router.get("/health")
def health(request: Request) -> dict[str, Any]:
    return {"status": "ok", "activeSessions": len(_orchestrator(request).registry.active())}


__all__ = ["router"]
