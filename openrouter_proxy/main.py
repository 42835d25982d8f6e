"""FastAPI application for the OpenRouter key pool proxy."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from openrouter_proxy.admin import admin_router
from openrouter_proxy.config import Config, load_config
from openrouter_proxy.key_pool import CredentialPool
from openrouter_proxy.proxy import proxy_request, sanitize_headers
from openrouter_proxy.retry import RetryCoordinator
from openrouter_proxy.store import (
    CredentialStore,
    InMemoryCredentialStore,
    JsonFileCredentialStore,
)

logger = logging.getLogger(__name__)


def build_store(config: Config) -> CredentialStore:
    if config.keys_file:
        return JsonFileCredentialStore(config.keys_file)
    return InMemoryCredentialStore()


def build_pool(config: Config, store: CredentialStore) -> CredentialPool:
    return CredentialPool(
        store,
        cooldown_seconds=config.rate_limit_cooldown_seconds,
        failure_threshold=config.failure_threshold,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level.upper()))

    http_client = httpx.AsyncClient(
        base_url=config.openrouter_base_url,
        timeout=httpx.Timeout(10.0, read=300.0, write=30.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )

    pool = build_pool(config, build_store(config))
    for api_key in config.api_keys:
        await pool.add_credential(api_key)

    app.state.config = config
    app.state.http_client = http_client
    app.state.pool = pool
    app.state.coordinator = RetryCoordinator(pool, max_attempts=config.max_attempts)

    status = await pool.get_status()
    logger.info(
        "OpenRouter proxy started with %d keys (%d available)",
        status["total_keys"],
        status["available_keys"],
    )

    yield

    await http_client.aclose()
    logger.info("OpenRouter proxy stopped")


app = FastAPI(title="OpenRouter API Key Pool Proxy", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.monotonic()
    logger.info(
        "Incoming request %s %s headers=%s",
        request.method,
        request.url.path,
        sanitize_headers(dict(request.headers)),
    )
    response = await call_next(request)
    logger.info(
        "Outgoing response %s %s status=%s time=%.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.monotonic() - started) * 1000,
    )
    return response


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    pool = request.app.state.pool
    status = await pool.get_status()
    return {
        "service": "OpenRouter API Key Pool Proxy",
        "status": "running",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with key pool status."""
    pool = request.app.state.pool
    status = await pool.get_status()
    return {
        "status": "healthy",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
    }


async def _forward(request: Request, upstream_path: str):
    return await proxy_request(
        request=request,
        coordinator=request.app.state.coordinator,
        http_client=request.app.state.http_client,
        config=request.app.state.config,
        upstream_path=upstream_path,
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    return await _forward(request, "chat/completions")


@app.post("/v1/completions")
async def completions(request: Request):
    return await _forward(request, "completions")


@app.post("/v1/embeddings")
async def embeddings(request: Request):
    return await _forward(request, "embeddings")


@app.get("/v1/models")
async def list_models(request: Request):
    return await _forward(request, "models")


def run() -> None:
    """Console entry point: serve the proxy with uvicorn."""
    config = load_config()
    uvicorn.run(
        "openrouter_proxy.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
