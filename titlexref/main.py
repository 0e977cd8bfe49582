"""Entry point for the FastAPI-powered cross-reference cache."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, TypeVar

import httpx
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from . import config as config_module
from .config import Settings
from .database import Database
from .errors import InvalidArgumentError, UnresolvedConflictError
from .merge import GenreFilter
from .models import ExtractedTitle, IdMapping, TitleRecord
from .providers.cinemeta import CinemetaClient
from .providers.imdbapi import ImdbApiClient
from .providers.jikan import JikanClient
from .providers.mapping import MappingClient
from .providers.mdblist import MDBListClient
from .providers.title_search import TitleSearchClient
from .providers.tmdb import TMDBClient
from .services.enrichment import EnrichmentOrchestrator
from .services.id_conversion import IdConversionService
from .services.id_lookup import CrossReferenceLookup
from .services.metadata_fetcher import MetadataFetcher
from .services.pipeline import TitlePipeline
from .services.rate_limits import RateLimitRegistry, ThrottleGroup
from .services.storage import TitleStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

T = TypeVar("T")

app: FastAPI


@dataclass(slots=True)
class ServiceContainer:
    """Everything the HTTP layer talks to, built once per application."""

    registry: RateLimitRegistry
    id_conversion: IdConversionService
    title_search: TitleSearchClient
    store: TitleStore
    lookup: CrossReferenceLookup
    orchestrator: EnrichmentOrchestrator
    fetcher: MetadataFetcher
    pipeline: TitlePipeline


def build_services(
    settings: Settings, http_client: httpx.AsyncClient, database: Database
) -> ServiceContainer:
    """Wire providers and services around one HTTP client and database."""

    registry = RateLimitRegistry(
        database.session_factory,
        cooldown_seconds=settings.rate_limit_cooldown_seconds,
        api_keys={"tmdb": settings.tmdb_api_key, "mdblist": settings.mdblist_api_key},
    )
    throttles = ThrottleGroup()
    public: dict[str, Any] = {
        "timeout": settings.request_timeout_seconds,
        "throttles": throttles,
        "registry": registry,
        "max_retries": 2,
    }

    mapping = MappingClient(http_client, base_url=settings.mapping_api_url, **public)
    title_search = TitleSearchClient(
        http_client,
        base_url=settings.title_search_api_url,
        max_entries=settings.title_search_cache_size,
        ttl_seconds=settings.title_search_cache_ttl_seconds,
        **public,
    )
    cinemeta = CinemetaClient(http_client, base_url=settings.cinemeta_api_url, **public)
    imdbapi = ImdbApiClient(http_client, base_url=settings.imdb_api_url, **public)
    jikan = JikanClient(http_client, base_url=settings.jikan_api_url, **public)

    tmdb = None
    if settings.tmdb_api_key:
        tmdb = TMDBClient(
            http_client,
            api_key=settings.tmdb_api_key,
            language=settings.language,
            base_url=settings.tmdb_api_url,
            timeout=settings.tmdb_timeout_seconds,
            registry=registry,
        )
    mdblist = None
    if settings.mdblist_api_key:
        mdblist = MDBListClient(
            http_client,
            api_key=settings.mdblist_api_key,
            base_url=settings.mdblist_api_url,
            timeout=settings.mdblist_timeout_seconds,
            registry=registry,
        )

    id_conversion = IdConversionService(
        mapping,
        max_entries=settings.conversion_cache_size,
        ttl_seconds=settings.conversion_cache_ttl_seconds,
    )
    store = TitleStore(
        database.session_factory,
        genre_filter=GenreFilter.from_settings(settings),
        stale_threshold_seconds=settings.stale_threshold_seconds,
        refresh_delay_seconds=settings.background_refresh_delay_seconds,
        conflict_retry_limit=settings.conflict_retry_limit,
    )
    lookup = CrossReferenceLookup(store, id_conversion, title_search)
    orchestrator = EnrichmentOrchestrator(
        store,
        registry=registry,
        id_conversion=id_conversion,
        tmdb=tmdb,
        mdblist=mdblist,
        jikan=jikan,
        tmdb_timeout=settings.tmdb_timeout_seconds,
        mdblist_timeout=settings.mdblist_timeout_seconds,
        private_ttl_seconds=settings.private_enrichment_ttl_seconds,
    )
    fetcher = MetadataFetcher(cinemeta, imdbapi, orchestrator=orchestrator)
    store.set_refresher(fetcher.refresh)
    pipeline = TitlePipeline(store, lookup, id_conversion, fetcher, orchestrator)

    return ServiceContainer(
        registry=registry,
        id_conversion=id_conversion,
        title_search=title_search,
        store=store,
        lookup=lookup,
        orchestrator=orchestrator,
        fetcher=fetcher,
        pipeline=pipeline,
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    settings = config_module.settings
    exit_stack = AsyncExitStack()
    client_kwargs: dict[str, Any] = {"timeout": httpx.Timeout(15.0, connect=5.0)}
    transport = getattr(fastapi_app.state, "http_transport", None)
    if transport is not None:
        client_kwargs["transport"] = transport
    http_client = await exit_stack.enter_async_context(httpx.AsyncClient(**client_kwargs))

    database = Database(settings.database_url)
    await database.create_all()

    services = build_services(settings, http_client, database)
    await services.registry.load()

    fastapi_app.state.services = services
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await services.pipeline.close()
        await services.store.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app(*, http_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    fastapi_app = FastAPI(
        title=config_module.settings.app_name,
        description="Metadata cross-reference and enrichment cache",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    fastapi_app.state.http_transport = http_transport

    register_routes(fastapi_app)
    return fastapi_app


def get_services(fastapi_app: FastAPI) -> ServiceContainer:
    services = getattr(fastapi_app.state, "services", None)
    if not isinstance(services, ServiceContainer):
        raise RuntimeError("Services not initialised")
    return services


async def _guarded(awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except InvalidArgumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UnresolvedConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _record_payload(record: TitleRecord | None, missing: str) -> dict[str, Any]:
    if record is None:
        raise HTTPException(status_code=404, detail=missing)
    return record.model_dump(mode="json")


def _mapping_payload(mapping: IdMapping | None, missing: str) -> dict[str, Any]:
    if mapping is None:
        raise HTTPException(status_code=404, detail=missing)
    return asdict(mapping)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/titles/{imdb_id}")
    async def get_title(imdb_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        record = await services.store.get_title(imdb_id)
        return _record_payload(record, f"Title {imdb_id} not found")

    @fastapi_app.post("/titles")
    async def save_title(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        services = get_services(fastapi_app)
        record = await _guarded(services.store.save_title(payload))
        return _record_payload(record, "Title could not be stored")

    @fastapi_app.post("/titles/process")
    async def process_title(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            extracted = ExtractedTitle.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        record = await _guarded(services.pipeline.process(extracted))
        return _record_payload(record, "Title could not be processed")

    @fastapi_app.delete("/titles")
    async def clear_titles() -> dict[str, str]:
        services = get_services(fastapi_app)
        await services.store.clear()
        return {"status": "cleared"}

    @fastapi_app.get("/lookup/{namespace}/{identifier}")
    async def lookup(namespace: str, identifier: str, request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        context = {
            key: request.query_params[key]
            for key in ("title", "type", "original_title")
            if request.query_params.get(key)
        }
        if request.query_params.get("year", "").isdigit():
            context["year"] = int(request.query_params["year"])
        record = await _guarded(
            services.lookup.find_by_any_id(identifier, namespace, context)
        )
        return _record_payload(record, f"No title known for {namespace}:{identifier}")

    @fastapi_app.get("/convert/imdb/{imdb_id}/reverse")
    async def reverse_convert(imdb_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        mapping = await _guarded(services.id_conversion.convert_from_imdb(imdb_id))
        return _mapping_payload(mapping, f"No mapping for {imdb_id}")

    @fastapi_app.get("/convert/{namespace}/{identifier}")
    async def convert(namespace: str, identifier: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        mapping = await _guarded(services.id_conversion.convert_to_imdb(identifier, namespace))
        return _mapping_payload(mapping, f"No mapping for {namespace}:{identifier}")

    @fastapi_app.get("/stats")
    async def stats() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return (await services.store.get_stats()).model_dump()

    @fastapi_app.get("/providers")
    async def providers() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "private": services.orchestrator.get_api_status(),
            "cooldowns": services.registry.status(),
        }

    @fastapi_app.get("/cache/stats")
    async def cache_stats() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "conversion": services.id_conversion.get_cache_stats(),
            "title_search": services.title_search.get_cache_stats(),
            "pending_conversions": services.id_conversion.pending_requests,
        }


app = create_app()
