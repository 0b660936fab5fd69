"""
Server entry point: FastAPI app setup and route configuration.
Builds the orchestrator from settings, runs its lifecycle in
the app lifespan and exposes the control surface over HTTP.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncGenerator

import dotenv
import fastapi
import uvicorn
from fastapi.middleware import cors

from tracksentry.capabilities.classifier import KeywordClassifier
from tracksentry.capabilities.filtering import MemoryFilter
from tracksentry.capabilities.persistence import JsonFileStore, KeyValueStore, MemoryStore
from tracksentry.config import ShieldSettings
from tracksentry.data import loader
from tracksentry.models.control import CategoryFeedback, ContextUpdate, ControlResult, OverrideRequest
from tracksentry.models.fingerprint import ProbeEvent
from tracksentry.models.policy import OverrideScope
from tracksentry.models.requests import InterceptedRequest
from tracksentry.pipeline.control import ControlSurface
from tracksentry.pipeline.orchestrator import Orchestrator
from tracksentry.utils import logger

dotenv.load_dotenv()

log = logger.create_logger("Server")


def build_orchestrator(settings: ShieldSettings) -> Orchestrator:
    """Wire the engines with the in-process filter and the configured store."""
    store: KeyValueStore = JsonFileStore(settings.state_dir) if settings.state_dir else MemoryStore()
    return Orchestrator(
        policy=loader.load_policy(settings.policy_file),
        filter_capability=MemoryFilter(),
        store=store,
        classifier=KeywordClassifier(),
        workers=settings.workers,
        queue_size=settings.queue_size,
        deferred_grace_seconds=settings.deferred_grace_seconds,
    )


def create_app(orchestrator: Orchestrator | None = None, settings: ShieldSettings | None = None) -> fastapi.FastAPI:
    """Create the HTTP app around an orchestrator (built from settings if absent)."""
    settings = settings or ShieldSettings()
    engine = orchestrator or build_orchestrator(settings)
    control = ControlSurface(engine)

    @contextlib.asynccontextmanager
    async def lifespan(_app: fastapi.FastAPI) -> AsyncGenerator[None]:
        """Reconcile and start the pipeline before serving; drain it on exit."""
        logger.start_log_file("server")
        log.section("Tracksentry Server Started")
        log.info("Settings", {"workers": settings.workers, "stateDir": str(settings.state_dir or "memory")})
        await engine.init()
        try:
            yield
        finally:
            await engine.shutdown()
            logger.end_log_file()

    app = fastapi.FastAPI(title="Tracksentry Server", lifespan=lifespan)
    app.state.orchestrator = engine
    app.state.control = control

    # ========================================================================
    # Middleware
    # ========================================================================

    app.add_middleware(
        cors.CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Ingestion Routes
    # ========================================================================

    @app.post("/api/requests")
    async def submit_request(request: InterceptedRequest) -> ControlResult:
        """Run one intercepted request through the pipeline and return its verdict."""
        return await control.submit_request(request)

    @app.post("/api/sessions/{session_id}/context")
    async def update_context(session_id: str, update: ContextUpdate) -> ControlResult:
        return await control.update_page_context(session_id, update)

    @app.post("/api/probes")
    async def record_probe(event: ProbeEvent) -> ControlResult:
        return await control.record_probe(event)

    @app.delete("/api/sessions/{session_id}")
    async def close_session(session_id: str) -> ControlResult:
        return await control.close_session(session_id)

    # ========================================================================
    # Control Routes
    # ========================================================================

    @app.get("/api/sessions/{session_id}/trackers")
    async def session_trackers(session_id: str) -> ControlResult:
        return await control.get_session_trackers(session_id)

    @app.get("/api/sessions/{session_id}/stats")
    async def session_stats(session_id: str) -> ControlResult:
        return await control.get_session_stats(session_id)

    @app.get("/api/sessions/{session_id}/report")
    async def session_report(session_id: str) -> ControlResult:
        return await control.export_report(session_id)

    @app.get("/api/sessions/{session_id}/patterns")
    async def pattern_summary(session_id: str) -> ControlResult:
        return await control.get_pattern_summary(session_id)

    @app.post("/api/overrides")
    async def set_override(request: OverrideRequest) -> ControlResult:
        return await control.set_user_override(request)

    @app.delete("/api/overrides/{domain}")
    async def clear_override(
        domain: str,
        session_id: str | None = fastapi.Query(None, alias="sessionId"),
        scope: OverrideScope = fastapi.Query("tab"),
    ) -> ControlResult:
        return await control.clear_user_override(domain, session_id, scope)

    @app.post("/api/domains/{domain}/block")
    async def force_block(domain: str) -> ControlResult:
        return await control.force_block(domain)

    @app.post("/api/domains/{domain}/unblock")
    async def force_unblock(domain: str) -> ControlResult:
        return await control.force_unblock(domain)

    @app.get("/api/insights")
    async def insights() -> ControlResult:
        return await control.get_insights()

    @app.get("/api/fingerprints")
    async def fingerprints(domain: str | None = fastapi.Query(None)) -> ControlResult:
        return await control.get_fingerprint_data(domain)

    @app.post("/api/feedback")
    async def category_feedback(feedback: CategoryFeedback) -> ControlResult:
        return await control.submit_category_feedback(feedback)

    @app.delete("/api/patterns")
    async def clear_patterns() -> ControlResult:
        return await control.clear_pattern_data()

    @app.delete("/api/fingerprints")
    async def clear_fingerprints(domain: str | None = fastapi.Query(None)) -> ControlResult:
        return await control.clear_fingerprint_data(domain)

    return app


app = create_app()


def main() -> None:
    """Run the server with uvicorn."""
    settings = ShieldSettings()
    uvicorn.run("tracksentry.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
