"""Operational HTTP surface for the snapshot engine."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from health import report_to_dict
from storage.errors import BackendUnavailableError

from .errors import AccountNotFoundError
from .service import SnapshotService
from .types import RetentionSummary

API_VERSION = "1.0"


class AccountsResponse(BaseModel):
    accounts: List[str]


class AccountStatusResponse(BaseModel):
    account: str
    workspace: str
    history: str
    in_progress: bool
    phase: str
    history_state: str
    snapshot_count: int
    latest_snapshot: Optional[str] = None
    last_snapshot_id: Optional[str] = None
    last_outcome: Optional[str] = None
    last_reason: Optional[str] = None
    updated_utc: Optional[str] = None


class PolicyResponse(BaseModel):
    account: str
    workspace: str
    history: str
    quota_bytes: Optional[int] = None
    warn_ratio: float
    retention: Dict[str, Any]


class AdmissionResponse(BaseModel):
    account: str
    decision: str
    usage_bytes: int
    limit_bytes: Optional[int] = None
    ratio: Optional[float] = None
    reason: str


class RetentionRequest(BaseModel):
    account: Optional[str] = None


class RetentionSummaryModel(BaseModel):
    account: str
    removed: List[str] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class RetentionResponse(BaseModel):
    summaries: List[RetentionSummaryModel]


class EventsResponse(BaseModel):
    events: List[Dict[str, Any]]


def _summary_model(summary: RetentionSummary) -> RetentionSummaryModel:
    return RetentionSummaryModel(
        account=summary.account,
        removed=list(summary.removed),
        kept=list(summary.kept),
        failed=list(summary.failed),
        error=summary.error,
    )


class SnapshotAPI:
    """Read-mostly endpoints; the only mutation is an explicit retention sweep."""

    def __init__(self, service: SnapshotService) -> None:
        self._service = service

    def router(self) -> APIRouter:
        router = APIRouter(prefix="/v1/snapshots", tags=["snapshots"])
        service = self._service

        def not_found(exc: AccountNotFoundError) -> HTTPException:
            return HTTPException(status_code=404, detail=str(exc))

        @router.get("/accounts", response_model=AccountsResponse)
        def accounts() -> AccountsResponse:
            return AccountsResponse(accounts=service.accounts())

        @router.get("/accounts/{name}", response_model=AccountStatusResponse)
        def account_status(name: str) -> AccountStatusResponse:
            try:
                return AccountStatusResponse(**service.account_status(name))
            except AccountNotFoundError as exc:
                raise not_found(exc) from exc

        @router.get("/accounts/{name}/policy", response_model=PolicyResponse)
        def policy(name: str) -> PolicyResponse:
            try:
                return PolicyResponse(**service.effective_policy(name))
            except AccountNotFoundError as exc:
                raise not_found(exc) from exc

        @router.post("/accounts/{name}/admission", response_model=AdmissionResponse)
        def admission(name: str) -> AdmissionResponse:
            try:
                result = service.admission(name)
            except AccountNotFoundError as exc:
                raise not_found(exc) from exc
            except BackendUnavailableError as exc:
                raise HTTPException(status_code=503, detail=str(exc)) from exc
            return AdmissionResponse(
                account=name,
                decision=result.decision.value,
                usage_bytes=result.usage_bytes,
                limit_bytes=result.limit_bytes,
                ratio=result.ratio,
                reason=result.reason,
            )

        @router.post("/retention", response_model=RetentionResponse)
        def retention(request: Optional[RetentionRequest] = None) -> RetentionResponse:
            target = request.account if request else None
            try:
                summaries = service.apply_retention(target)
            except AccountNotFoundError as exc:
                raise not_found(exc) from exc
            return RetentionResponse(summaries=[_summary_model(item) for item in summaries])

        @router.get("/events", response_model=EventsResponse)
        def events(limit: int = Query(100, ge=1, le=5000)) -> EventsResponse:
            return EventsResponse(events=service.recent_events(limit))

        @router.get("/health")
        def health() -> Dict[str, Any]:
            payload = report_to_dict(service.health(persist=False))
            payload["degraded_reason"] = service.degraded_reason
            payload["events_error"] = service.events_error
            return payload

        return router


def create_app(service: SnapshotService, *, manage_service: bool = False) -> FastAPI:
    """Build the FastAPI app; with *manage_service* the app starts and stops it."""

    app = FastAPI(
        title="vaultsnap",
        version=API_VERSION,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )
    app.include_router(SnapshotAPI(service).router())

    if manage_service:

        @app.on_event("startup")
        async def _startup() -> None:
            service.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            service.stop()

    return app


__all__ = ["SnapshotAPI", "create_app"]
