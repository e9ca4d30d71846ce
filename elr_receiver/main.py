"""
ELR Receiver: HL7 v2 over HTTP listener.

    POST /elrreceiver   HL7 ER7 message in, acknowledgment out (application/hl7-v2)
    GET  /health        liveness
    GET  /stats         pipeline counters and retry queue depth

Run with: uvicorn elr_receiver.main:create_app --factory --port 8888
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import requests
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.concurrency import run_in_threadpool

from .clients.registry_client import RegistryClient
from .config import Settings, load_filter_spec
from .logging_setup import setup_logging
from .receiver import ELRReceiverApplication
from .retry_drainer import RetryDrainer
from .retry_queue import RetryQueue

logger = logging.getLogger("elr-receiver")

HL7_MEDIA_TYPE = "application/hl7-v2"
VERSION = "1.0.0"

security = HTTPBasic(auto_error=False)


def request_charset(content_type: str, default: str = "utf-8") -> str:
    """The charset parameter of a Content-Type header, or ``default``."""
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip('"')
    return default


def create_app(settings: Optional[Settings] = None, session: Optional[requests.Session] = None) -> FastAPI:
    """
    Build the listener and its pipeline.

    Without ``settings`` the environment is read and logging is configured;
    that is the path uvicorn takes with ``--factory``.
    """
    if settings is None:
        settings = Settings.from_environment()
        setup_logging(settings.log_file, settings.log_level)

    queue = RetryQueue(settings.queue_file)
    client = RegistryClient(
        settings.registry_url,
        queue,
        auth_basic=settings.auth_basic,
        auth_bearer=settings.auth_bearer,
        timeout=settings.request_timeout,
        save_to_file=settings.save_to_file,
        file_path=settings.file_path,
        session=session,
    )
    receiver = ELRReceiverApplication(client, load_filter_spec(settings.filter_spec_path))
    drainer = RetryDrainer(
        queue,
        client,
        initial_delay=settings.queue_initial_delay,
        interval=settings.queue_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("=" * 60)
        logger.info("  ELR RECEIVER STARTING")
        logger.info("=" * 60)
        for key, value in settings.to_dict().items():
            logger.info(f"  {key:<20} {value}")
        logger.info(f"  HL7 endpoint:      http://localhost:{settings.port}/elrreceiver")
        logger.info("=" * 60)
        drainer.start()
        yield
        drainer.stop()
        logger.info("=" * 60)
        logger.info("  ELR RECEIVER SHUTTING DOWN")
        logger.info("=" * 60)

    app = FastAPI(
        title="ELR Receiver",
        description="HL7 v2 electronic lab reporting gateway to the FHIR registry",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.receiver = receiver
    app.state.queue = queue
    app.state.drainer = drainer

    def check_credentials(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> None:
        if not settings.hl7_http_basic:
            return
        user, _, password = settings.hl7_http_basic.partition(":")
        valid = credentials is not None and (
            secrets.compare_digest(credentials.username.encode(), user.encode())
            and secrets.compare_digest(credentials.password.encode(), password.encode())
        )
        if not valid:
            logger.warning("[HTTP] Rejected request with missing or wrong credentials")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )

    @app.post("/elrreceiver", dependencies=[Depends(check_credentials)])
    @app.post("/elrreceiver/", dependencies=[Depends(check_credentials)], include_in_schema=False)
    async def receive(request: Request):
        """Accept one HL7 v2 message and answer with its acknowledgment."""
        body = await request.body()
        charset = request_charset(request.headers.get("content-type", ""))
        logger.debug(f"[HTTP] Received {len(body)} bytes")
        # The pipeline blocks on the registry call; keep it off the event loop.
        ack = await run_in_threadpool(receiver.handle_bytes, body, charset)
        return Response(content=ack, media_type=HL7_MEDIA_TYPE)

    @app.get("/health")
    async def health():
        """Simple health check endpoint."""
        logger.debug("Health check")
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.get("/stats")
    async def stats():
        """Pipeline counters."""
        return {
            **receiver.stats(),
            "drainer_running": drainer.running,
            "filter_loaded": receiver.filter_spec is not None,
        }

    return app
