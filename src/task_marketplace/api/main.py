"""FastAPI app entrypoint for task-marketplace."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from task_marketplace.api.schemas import (
    BookingWithTask,
    CancelRequest,
    CompleteBookingRequest,
    EnrichLocationRequest,
    InterestRequest,
    MatchRequest,
    MatchResponse,
    RequestProviderRequest,
    RescheduleBookingRequest,
    RespondRequest,
    RespondResponse,
    TaskWithBooking,
    VerifyLocationRequest,
)
from task_marketplace.config.settings import Settings, get_settings
from task_marketplace.domain.errors import (
    ErrorKind,
    MarketplaceError,
    NotAuthorizedError,
    ValidationFailedError,
)
from task_marketplace.domain.models import (
    Booking,
    Coordinates,
    CreateTaskRequest,
    Task,
    TaskStatus,
    UpdateTaskRequest,
)
from task_marketplace.geo.models import GeocodeResult, Location, LocationVerification
from task_marketplace.geo.nominatim import GeocodingClient, NominatimClient
from task_marketplace.geo.service import GeoLocationService
from task_marketplace.lifecycle.bookings import BookingConverter
from task_marketplace.lifecycle.tasks import MatchOutcome, TaskLifecycle
from task_marketplace.matching.engine import MatchingEngine
from task_marketplace.matching.strategies import build_strategies
from task_marketplace.providers.base import ProviderCandidateSource
from task_marketplace.providers.http import HttpProviderSource
from task_marketplace.providers.memory import InMemoryProviderSource
from task_marketplace.storage.base import MarketplaceStorage
from task_marketplace.storage.memory import InMemoryMarketplaceStorage
from task_marketplace.storage.postgres import PostgresMarketplaceStorage

logger = logging.getLogger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    "validation": 422,
    "conflict": 409,
    "not_found": 404,
    "authorization": 403,
    "external": 503,
}


def _build_storage(settings: Settings) -> MarketplaceStorage:
    if settings.storage_backend == "memory":
        return InMemoryMarketplaceStorage()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set MARKETPLACE_DATABASE_URL or DATABASE_URL, "
            "or MARKETPLACE_STORAGE_BACKEND=memory for local runs."
        )
    return PostgresMarketplaceStorage(database_url)


def _build_provider_source(settings: Settings) -> ProviderCandidateSource:
    if settings.provider_source_url:
        return HttpProviderSource(
            settings.provider_source_url,
            timeout_s=settings.provider_source_timeout_s,
            max_retries=settings.provider_source_max_retries,
        )
    if settings.provider_seed_path:
        return InMemoryProviderSource.from_json_file(settings.provider_seed_path)
    return InMemoryProviderSource()


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: MarketplaceStorage | None,
    provider_source_override: ProviderCandidateSource | None,
    geocoder_override: GeocodingClient | None,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or _build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "geo"):
        geocoder = geocoder_override or NominatimClient.from_settings(settings)
        app.state.geo = GeoLocationService(
            geocoder,
            verification_radius_km=settings.verification_radius_km,
            confidence_cutoff_km=settings.confidence_cutoff_km,
        )

    if not hasattr(app.state, "lifecycle"):
        engine = MatchingEngine(
            provider_source_override or _build_provider_source(settings),
            app.state.geo,
            strategies=build_strategies(settings),
            default_strategy=settings.default_matching_strategy,
            default_max_distance_km=settings.default_max_distance_km,
            default_limit=settings.default_match_limit,
            max_limit=settings.max_match_limit,
            candidate_pool_size=settings.candidate_pool_size,
        )
        app.state.converter = BookingConverter(app.state.storage)
        app.state.lifecycle = TaskLifecycle(
            app.state.storage,
            engine,
            app.state.converter,
            task_ttl_days=settings.task_ttl_days,
        )


def _actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str:
    if not x_actor_id or not x_actor_id.strip():
        raise NotAuthorizedError("ACTOR_REQUIRED", "X-Actor-Id header is required")
    return x_actor_id.strip()


def create_app(
    *,
    storage: MarketplaceStorage | None = None,
    provider_source: ProviderCandidateSource | None = None,
    geocoder: GeocodingClient | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            provider_source_override=provider_source,
            geocoder_override=geocoder,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure(app)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
        status_code = _STATUS_BY_KIND.get(exc.kind, 400)
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "api event=error method=%s path=%s code=%s kind=%s",
            request.method,
            request.url.path,
            exc.code,
            exc.kind,
        )
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    def _lifecycle(request: Request) -> TaskLifecycle:
        if not hasattr(request.app.state, "lifecycle"):
            _ensure(request.app)
        return request.app.state.lifecycle

    def _converter(request: Request) -> BookingConverter:
        if not hasattr(request.app.state, "converter"):
            _ensure(request.app)
        return request.app.state.converter

    def _geo(request: Request) -> GeoLocationService:
        if not hasattr(request.app.state, "geo"):
            _ensure(request.app)
        return request.app.state.geo

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    # Tasks

    @app.post("/tasks", response_model=Task, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        actor_id: str = Depends(_actor_id),
    ) -> Task:
        return _lifecycle(request).create_task(actor_id, payload)

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(
        request: Request,
        actor_id: str = Depends(_actor_id),
        customer_id: str | None = Query(default=None, alias="customerId"),
        status: list[TaskStatus] | None = Query(default=None),
    ) -> list[Task]:
        if customer_id is not None and customer_id != actor_id:
            raise NotAuthorizedError(
                "NOT_TASK_OWNER", "Customers can only list their own tasks", actor_id=actor_id
            )
        return _lifecycle(request).list_customer_tasks(actor_id, statuses=status)

    # Declared before /tasks/{task_id} so the literal paths win.
    @app.get("/tasks/floating", response_model=list[Task])
    def list_floating_tasks(
        request: Request,
        actor_id: str = Depends(_actor_id),
        lat: float | None = Query(default=None, ge=-90.0, le=90.0),
        lng: float | None = Query(default=None, ge=-180.0, le=180.0),
        radius_km: float | None = Query(default=None, gt=0.0, alias="radiusKm"),
        limit: int = Query(default=50, ge=1, le=100),
    ) -> list[Task]:
        if (lat is None) != (lng is None):
            raise ValidationFailedError(
                "lat and lng must be given together",
                fields={"lat": str(lat), "lng": str(lng)},
            )
        coordinates = None
        if lat is not None and lng is not None:
            coordinates = Coordinates(latitude=lat, longitude=lng)
        return _lifecycle(request).list_floating_tasks_for_provider(
            actor_id, coordinates, max_distance_km=radius_km, limit=limit
        )

    @app.get("/tasks/provider/matched", response_model=list[Task])
    def list_matched_tasks(request: Request, actor_id: str = Depends(_actor_id)) -> list[Task]:
        return _lifecycle(request).list_matched_tasks_for_provider(actor_id)

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        return _lifecycle(request).get_task(task_id)

    @app.patch("/tasks/{task_id}", response_model=Task)
    def update_task(
        task_id: str,
        payload: UpdateTaskRequest,
        request: Request,
        actor_id: str = Depends(_actor_id),
    ) -> Task:
        return _lifecycle(request).update_task(task_id, actor_id, payload)

    @app.delete("/tasks/{task_id}", response_model=Task)
    def delete_task(task_id: str, request: Request, actor_id: str = Depends(_actor_id)) -> Task:
        return _lifecycle(request).delete_task(task_id, actor_id)

    @app.post("/tasks/{task_id}/restore", response_model=Task)
    def restore_task(task_id: str, request: Request, actor_id: str = Depends(_actor_id)) -> Task:
        return _lifecycle(request).restore_task(task_id, actor_id)

    @app.post("/tasks/{task_id}/match", response_model=MatchResponse)
    def run_matching(
        task_id: str,
        request: Request,
        payload: MatchRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> MatchResponse:
        body = payload or MatchRequest()
        outcome = _lifecycle(request).run_matching(
            task_id,
            actor_id,
            strategy=body.strategy,
            max_distance_km=body.max_distance_km,
            limit=body.limit,
        )
        return _match_response(outcome)

    @app.post("/tasks/{task_id}/rematch", response_model=MatchResponse)
    def rematch_task(
        task_id: str,
        request: Request,
        payload: MatchRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> MatchResponse:
        body = payload or MatchRequest()
        outcome = _lifecycle(request).rematch_task(
            task_id,
            actor_id,
            strategy=body.strategy,
            max_distance_km=body.max_distance_km,
            limit=body.limit,
        )
        return _match_response(outcome)

    @app.post("/tasks/{task_id}/interest", response_model=Task)
    def express_interest(
        task_id: str,
        request: Request,
        payload: InterestRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> Task:
        message = payload.message if payload else None
        return _lifecycle(request).express_interest(task_id, actor_id, message)

    @app.post("/tasks/{task_id}/request-provider", response_model=Task)
    def request_provider(
        task_id: str,
        payload: RequestProviderRequest,
        request: Request,
        actor_id: str = Depends(_actor_id),
    ) -> Task:
        return _lifecycle(request).request_provider(
            task_id, actor_id, payload.provider_id, payload.message
        )

    @app.post("/tasks/{task_id}/respond", response_model=RespondResponse)
    def respond_to_request(
        task_id: str,
        payload: RespondRequest,
        request: Request,
        actor_id: str = Depends(_actor_id),
    ) -> RespondResponse:
        result = _lifecycle(request).respond_to_request(
            task_id, actor_id, accept=payload.action == "accept"
        )
        return RespondResponse(task=result.task, booking=result.booking)

    @app.post("/tasks/{task_id}/cancel", response_model=Task)
    def cancel_task(
        task_id: str,
        request: Request,
        payload: CancelRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> Task:
        reason = payload.reason if payload else None
        return _lifecycle(request).cancel_task(task_id, actor_id, reason)

    @app.get("/tasks/{task_id}/with-booking", response_model=TaskWithBooking)
    def get_task_with_booking(task_id: str, request: Request) -> TaskWithBooking:
        task, booking = _lifecycle(request).get_task_with_booking(task_id)
        return TaskWithBooking(task=task, booking=booking)

    # Bookings

    @app.get("/bookings", response_model=list[Booking])
    def list_bookings(
        request: Request,
        client_id: str | None = Query(default=None, alias="clientId"),
        provider_id: str | None = Query(default=None, alias="providerId"),
    ) -> list[Booking]:
        return _converter(request).list_bookings(client_id=client_id, provider_id=provider_id)

    @app.get("/bookings/stats")
    def booking_stats(
        request: Request,
        client_id: str | None = Query(default=None, alias="clientId"),
        provider_id: str | None = Query(default=None, alias="providerId"),
    ) -> dict[str, int]:
        return _converter(request).status_summary(client_id=client_id, provider_id=provider_id)

    @app.get("/bookings/{booking_id}", response_model=Booking)
    def get_booking(booking_id: str, request: Request) -> Booking:
        return _converter(request).get_booking(booking_id)

    @app.get("/bookings/{booking_id}/with-task", response_model=BookingWithTask)
    def get_booking_with_task(booking_id: str, request: Request) -> BookingWithTask:
        booking, task = _converter(request).get_booking_with_task(booking_id)
        return BookingWithTask(booking=booking, task=task)

    @app.post("/bookings/{booking_id}/start", response_model=Booking)
    def start_booking(
        booking_id: str, request: Request, actor_id: str = Depends(_actor_id)
    ) -> Booking:
        return _converter(request).start(booking_id, actor_id)

    @app.post("/bookings/{booking_id}/complete", response_model=Booking)
    def complete_booking(
        booking_id: str,
        request: Request,
        payload: CompleteBookingRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> Booking:
        final_price = payload.final_price if payload else None
        return _converter(request).complete(booking_id, actor_id, final_price)

    @app.post("/bookings/{booking_id}/reschedule", response_model=Booking)
    def reschedule_booking(
        booking_id: str,
        payload: RescheduleBookingRequest,
        request: Request,
        actor_id: str = Depends(_actor_id),
    ) -> Booking:
        return _converter(request).reschedule(
            booking_id,
            actor_id,
            payload.scheduled_start,
            payload.scheduled_end,
            payload.reason,
        )

    @app.post("/bookings/{booking_id}/cancel", response_model=Booking)
    def cancel_booking(
        booking_id: str,
        request: Request,
        payload: CancelRequest | None = None,
        actor_id: str = Depends(_actor_id),
    ) -> Booking:
        reason = payload.reason if payload else None
        return _converter(request).cancel(booking_id, actor_id, reason)

    # Geo

    @app.post("/geo/enrich", response_model=Location)
    def enrich_location(payload: EnrichLocationRequest, request: Request) -> Location:
        return _geo(request).enrich_location(
            payload.postal_code, payload.coordinates, payload.landmark
        )

    @app.post("/geo/verify", response_model=LocationVerification)
    def verify_location(payload: VerifyLocationRequest, request: Request) -> LocationVerification:
        return _geo(request).verify_location(payload.postal_code, payload.coordinates)

    @app.get("/geo/geocode", response_model=GeocodeResult)
    def geocode(request: Request, q: str = Query(min_length=1)) -> GeocodeResult:
        return _geo(request).geocode_address(q)

    @app.get("/geo/reverse", response_model=Location)
    def reverse_geocode(
        request: Request,
        lat: float = Query(ge=-90.0, le=90.0),
        lng: float = Query(ge=-180.0, le=180.0),
    ) -> Location:
        return _geo(request).reverse_geocode(Coordinates(latitude=lat, longitude=lng))

    @app.get("/geo/nearby", response_model=list[GeocodeResult])
    def search_nearby(
        request: Request,
        q: str = Query(min_length=1),
        lat: float = Query(ge=-90.0, le=90.0),
        lng: float = Query(ge=-180.0, le=180.0),
        radius_km: float = Query(default=5.0, gt=0.0, alias="radiusKm"),
    ) -> list[GeocodeResult]:
        return _geo(request).search_nearby(Coordinates(latitude=lat, longitude=lng), q, radius_km)

    return app


app = create_app()


def _match_response(outcome: MatchOutcome) -> MatchResponse:
    return MatchResponse(task=outcome.task, candidates=outcome.candidates, summary=outcome.summary)
