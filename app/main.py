"""Entry point for the FastAPI-powered Stremio addon."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any
from urllib.parse import parse_qsl

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cache import CatalogCache, create_cache_store
from .catalogs import manifest_catalogs
from .config import settings
from .errors import InvalidConfigurationError
from .models import CONTENT_TYPES, PLACEHOLDER_POSTER_PATH, ProviderName, UserConfig
from .resilience import BreakerRegistry
from .services.catalog_generator import CatalogService
from .services.metadata_addon import MetadataAddonClient
from .services.providers import ProviderFactory, build_client_pools
from .services.weather import WeatherClient

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

MANIFEST_ID = "com.nowpicks.python"
MANIFEST_VERSION = "1.0.0"

PLACEHOLDER_POSTER_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="300" height="450" viewBox="0 0 300 450">
<rect width="300" height="450" fill="#1a1a2e"/>
<text x="150" y="225" fill="#ffffff" font-family="sans-serif" font-size="32" text-anchor="middle">NowPicks</text>
</svg>
"""

app: FastAPI


class KeyValidationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: ProviderName
    api_key: str = Field(alias="apiKey", min_length=1)
    model: str | None = None


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    metadata_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    weather_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.weather_api_url).rstrip("/"),
            timeout=httpx.Timeout(5.0, connect=3.0),
        )
    )

    breakers = BreakerRegistry(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown=settings.breaker_cooldown_seconds,
    )
    providers = ProviderFactory(settings, build_client_pools(settings), breakers)
    metadata_client = MetadataAddonClient(
        metadata_http_client, str(settings.metadata_addon_url)
    )
    cache = CatalogCache(create_cache_store(settings))
    catalog_service = CatalogService(
        settings,
        providers,
        metadata_client,
        cache,
        weather=WeatherClient(weather_http_client),
    )

    fastapi_app.state.catalog_service = catalog_service
    await catalog_service.start()
    logger.info("Using %s cache backend", settings.cache_backend)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await catalog_service.stop()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Context-aware AI catalogs for Stremio",
        version=MANIFEST_VERSION,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def build_manifest(config: UserConfig | None = None) -> dict[str, Any]:
    """Return the add-on manifest, listing catalogs only once configured."""

    configured = config is not None
    types = [t for t in CONTENT_TYPES if config is None or config.includes(t)]
    return {
        "id": MANIFEST_ID,
        "version": MANIFEST_VERSION,
        "name": settings.app_name,
        "description": "AI picks tuned to your time of day, season and weather.",
        "catalogs": manifest_catalogs(config) if configured else [],
        "resources": ["catalog"],
        "types": types,
        "idPrefixes": ["tt"],
        "behaviorHints": {
            "configurable": True,
            "configurationRequired": not configured,
        },
    }


def parse_extra(request: Request, extra: str) -> dict[str, str]:
    """Parse Stremio's ``key=value&...`` extra path segment.

    The raw path is preferred so an encoded ``&`` inside a search stays part
    of the value.
    """

    raw_path = request.scope.get("raw_path")
    segment = extra
    if isinstance(raw_path, bytes):
        segment = raw_path.decode("latin-1").rsplit("/", 1)[-1].removesuffix(".json")
    return dict(parse_qsl(segment, keep_blank_values=True))


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        return {"status": "ok", **service.stats()}

    @fastapi_app.get(PLACEHOLDER_POSTER_PATH)
    async def placeholder_poster() -> Response:
        return Response(PLACEHOLDER_POSTER_SVG, media_type="image/svg+xml")

    @fastapi_app.get("/manifest.json")
    async def manifest() -> dict[str, Any]:
        return build_manifest()

    @fastapi_app.get("/{config}/manifest.json")
    async def manifest_with_config(config: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        try:
            user_config = service.decode_config(config)
        except InvalidConfigurationError as exc:
            raise HTTPException(status_code=400, detail="Invalid configuration") from exc
        return build_manifest(user_config)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}.json")
    async def catalog(config: str, content_type: str, catalog_id: str) -> JSONResponse:
        if content_type not in CONTENT_TYPES:
            raise HTTPException(status_code=404, detail="Unknown catalog type")
        service = get_catalog_service(fastapi_app)
        try:
            payload = await service.get_catalog(config, content_type, catalog_id)  # type: ignore[arg-type]
        except InvalidConfigurationError as exc:
            raise HTTPException(status_code=400, detail="Invalid configuration") from exc
        return JSONResponse(payload)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}/{extra}.json")
    async def catalog_with_extra(
        request: Request, config: str, content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        if content_type not in CONTENT_TYPES:
            raise HTTPException(status_code=404, detail="Unknown catalog type")
        service = get_catalog_service(fastapi_app)
        query = parse_extra(request, extra).get("search", "").strip()
        try:
            if query:
                payload = await service.get_search(config, content_type, query)  # type: ignore[arg-type]
            else:
                payload = await service.get_catalog(config, content_type, catalog_id)  # type: ignore[arg-type]
        except InvalidConfigurationError as exc:
            raise HTTPException(status_code=400, detail="Invalid configuration") from exc
        return JSONResponse(payload)

    @fastapi_app.post("/api/config")
    async def create_config(request: Request) -> JSONResponse:
        service = get_catalog_service(fastapi_app)
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        try:
            user_config = UserConfig.model_validate(body)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400,
                detail=exc.errors(include_url=False, include_context=False, include_input=False),
            ) from exc

        token = service.encode_config(user_config)
        base_url = str(settings.base_url or request.base_url).rstrip("/")
        return JSONResponse(
            {"token": token, "manifestUrl": f"{base_url}/{token}/manifest.json"}
        )

    @fastapi_app.post("/api/validate-key")
    async def validate_key(request: Request) -> JSONResponse:
        service = get_catalog_service(fastapi_app)
        try:
            payload = KeyValidationRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail="Invalid validation request") from exc

        result = await service.validate_api_key(
            payload.provider, payload.api_key, payload.model
        )
        body: dict[str, Any] = {"valid": result.valid}
        if result.error:
            body["error"] = result.error
        return JSONResponse(body)


app = create_app()
