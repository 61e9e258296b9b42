"""FastAPI application receiving signed deployment webhooks."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
from opentelemetry import trace

from ..common.http_security import Network, parse_trusted_proxies, require_metrics_access, resolve_client_identity
from ..common.metrics import GLOBAL_REGISTRY
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.ratelimit import AbuseController
from ..common.schemas import VersionInfo
from ..common.secrets import SecretFileError, load_secret
from ..common.settings import ListenerSettings
from .deploy import ComposeDeployer, ComposeUnavailableError, DeployDispatcher, Deployer
from .pipeline import RequestValidationPipeline, WebhookRejected

LOGGER = structlog.get_logger("dchook.listener")
TRACER = trace.get_tracer("dchook.listener")

SIGNATURE_HEADER = "dchook-signature"
SHUTDOWN_DRAIN_SECONDS = 5.0


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: ListenerSettings,
        pipeline: RequestValidationPipeline,
        dispatcher: DeployDispatcher,
        trusted_proxies: list[Network],
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.trusted_proxies = trusted_proxies

    def version_info(self) -> VersionInfo:
        return VersionInfo(
            version=self.settings.build_version,
            commit=self.settings.build_commit,
            supported_algorithms=sorted(self.settings.allowed_algorithms),
        )


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def build_state(settings: ListenerSettings, deployer: Deployer, secret: str) -> AppState:
    controller = AbuseController(
        success_limit=settings.success_limit,
        success_window=settings.success_window_seconds,
        fail_limit=settings.fail_limit,
        ban_duration=settings.ban_duration_seconds,
        replay_retention=settings.replay_retention_seconds,
    )
    pipeline = RequestValidationPipeline(
        secret=secret,
        allowed_algorithms=settings.allowed_algorithms,
        controller=controller,
        server_version=settings.build_version,
        server_commit=settings.build_commit,
    )
    return AppState(
        settings=settings,
        pipeline=pipeline,
        dispatcher=DeployDispatcher(deployer),
        trusted_proxies=parse_trusted_proxies(settings.trusted_proxy_cidrs),
    )


async def _read_bounded_body(request: Request, limit: int) -> Optional[bytes]:
    """Read the request body, returning None as soon as it exceeds ``limit`` bytes."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        return None
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            return None
    return bytes(body)


def create_app(
    settings: Optional[ListenerSettings] = None,
    deployer: Optional[Deployer] = None,
    *,
    secret: Optional[str] = None,
) -> FastAPI:
    """Build the listener app.

    ``secret`` is the webhook secret when the caller has already read it. The
    secret file can be a named pipe that yields its content once, so the
    lifespan reads ``settings.secret_file`` only when ``secret`` is None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or ListenerSettings()
        configure_observability("dchook.listener", resolved)
        active_deployer = deployer or ComposeDeployer(resolved.compose_file, docker_binary=resolved.docker_binary)
        try:
            active_secret = secret
            if active_secret is None:
                active_secret = await asyncio.to_thread(load_secret, resolved.secret_file)
            await active_deployer.ensure_ready()
        except (SecretFileError, ComposeUnavailableError) as exc:
            LOGGER.error("listener_startup_failed", error=str(exc))
            raise
        container = build_state(resolved, active_deployer, active_secret)
        app.state.container = container
        LOGGER.info(
            "listener_ready",
            version=resolved.build_version,
            commit=resolved.build_commit,
            algorithms=sorted(resolved.allowed_algorithms),
        )
        try:
            yield
        finally:
            await container.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.post("/deploy")
    async def deploy_webhook(request: Request, state: AppState = Depends(_get_state)) -> Response:
        with TRACER.start_as_current_span("listener.deploy_webhook") as span:
            pipeline = state.pipeline
            client_ip = resolve_client_identity(request, state.trusted_proxies)
            span.set_attribute("dchook.client_ip", client_ip)
            try:
                pipeline.check_access(client_ip)
                body = await _read_bounded_body(request, state.settings.max_body_bytes)
                if body is None:
                    raise pipeline.reject_oversized(client_ip, state.settings.max_body_bytes)
                envelope = pipeline.validate(client_ip, body, request.headers.get(SIGNATURE_HEADER))
            except WebhookRejected as exc:
                span.set_attribute("dchook.rejection", exc.reason.value)
                return PlainTextResponse(f"{exc.detail}\n", status_code=exc.status_code)

            header = envelope.dchook
            state.dispatcher.trigger(client_ip=client_ip, version=header.version, commit=header.commit)
            return PlainTextResponse("Deployment triggered\n", status_code=status.HTTP_202_ACCEPTED)

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> PlainTextResponse:
        return PlainTextResponse("OK\n")

    @app.get("/version")
    async def version(state: AppState = Depends(_get_state)) -> JSONResponse:
        if not state.settings.enable_version_endpoint:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
        return JSONResponse(state.version_info().model_dump())

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: AppState = Depends(_get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
