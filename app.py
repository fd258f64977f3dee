# app.py — ProgressHub
# - Bearer-authenticated progress API with live updates over /ws
# - Cached per-student aggregates, invalidated on every attempt
# - Security alerting and a background retention sweep

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

import db
from auth import AuthError, ExpiredCredential, TokenAuthenticator, extract_bearer
from engines.broadcast import BroadcastHub
from engines.caching import Cache
from engines.progress_tracker import AccessDenied, ProgressTracker, student_channel
from engines.retention import RetentionEnforcer
from engines.security_monitor import PrivilegeViolation, SecurityAlertMonitor
from env_validation import Settings, load_settings, validate_environment
from schemas import AttemptBody, IdentityContext, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    authenticator: TokenAuthenticator
    cache: Cache
    hub: BroadcastHub
    monitor: SecurityAlertMonitor
    tracker: ProgressTracker
    retention: RetentionEnforcer

    def close(self) -> None:
        self.retention.stop()
        self.hub.close()
        self.monitor.flush()
        self.monitor.close()


def build_services(settings: Optional[Settings] = None) -> Services:
    """Construct every stateful component once; request handlers share them."""
    settings = settings or load_settings()
    hub = BroadcastHub(queue_size=settings.broadcast_queue_size)
    monitor = SecurityAlertMonitor(
        window_seconds=settings.alert_window_seconds,
        thresholds=settings.alert_thresholds,
        hub=hub,
        rate_limit_per_minute=settings.rate_limit_per_minute,
    )
    authenticator = TokenAuthenticator(
        settings.auth_secret,
        algorithm=settings.auth_algorithm,
        leeway=settings.auth_leeway,
        default_ttl=settings.auth_token_ttl,
        failure_listener=monitor.on_auth_failure,
    )
    cache = Cache(max_entries=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)
    tracker = ProgressTracker(cache, hub, monitor=monitor, default_passing_score=settings.passing_score)
    retention = RetentionEnforcer(interval_seconds=settings.retention_interval_seconds, cache=cache)
    return Services(
        settings=settings,
        authenticator=authenticator,
        cache=cache,
        hub=hub,
        monitor=monitor,
        tracker=tracker,
        retention=retention,
    )


def get_services(target: FastAPI) -> Services:
    services = getattr(target.state, "services", None)
    if services is None:
        services = build_services()
        target.state.services = services
    return services


@asynccontextmanager
async def _lifespan(application: FastAPI):
    try:
        # Validate environment variables first
        validate_environment()
        services = get_services(application)
        db.configure(services.settings.db_path)
        db.init()
        if services.settings.retention_enabled:
            services.retention.start()
        logger.info(
            "ProgressHub ready: cache<=%s entries, alert window %ss, retention every %ss",
            services.settings.cache_max_entries,
            services.settings.alert_window_seconds,
            services.settings.retention_interval_seconds,
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        services.close()


app = FastAPI(title="ProgressHub", version="1.0.0", lifespan=_lifespan)

_PUBLIC_PATHS = frozenset({"/", "/health"})


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _credential_from(request: Request) -> Optional[str]:
    header_token = extract_bearer(request.headers.get("authorization"))
    if header_token:
        return header_token
    alt_header = request.headers.get("x-token")
    if alt_header:
        return alt_header.strip() or None
    return request.query_params.get("token") or None


def _unauthorized(code: str) -> Response:
    return Response(
        status_code=401,
        content=json.dumps({"detail": "missing or invalid token", "code": code}),
        media_type="application/json",
    )


@app.middleware("http")
async def _enforce_token(request: Request, call_next):
    if _normalize_path(request.url.path) in _PUBLIC_PATHS:
        return await call_next(request)
    services = get_services(request.app)
    source = request.client.host if request.client else None
    try:
        identity = await run_in_threadpool(services.authenticator.authenticate, _credential_from(request), source)
    except AuthError as exc:
        return _unauthorized(exc.kind)
    request.state.identity = identity
    services.monitor.observe_request(identity.subject_id)
    return await call_next(request)


def _identity(request: Request) -> IdentityContext:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="missing or invalid token")
    return identity


def _require_role(request: Request, *roles: str) -> IdentityContext:
    identity = _identity(request)
    if identity.role not in roles:
        get_services(request.app).monitor.record_outcome(
            PrivilegeViolation(subject_id=identity.subject_id, resource=request.url.path)
        )
        raise HTTPException(status_code=403, detail="forbidden")
    return identity


# ---------- Progress ----------
@app.post("/progress/attempts")
def record_attempt(request: Request, body: AttemptBody):
    identity = _identity(request)
    tracker = get_services(request.app).tracker
    student_id = (body.student_id or "").strip() or identity.subject_id
    try:
        record = tracker.record_attempt(
            identity,
            student_id,
            body.exercise_id,
            body.score,
            body.time_spent,
            passing_score=body.passing_score,
        )
    except AccessDenied:
        raise HTTPException(status_code=403, detail="forbidden")
    except ExpiredCredential:
        raise HTTPException(status_code=401, detail="credential expired")
    except db.PersistenceError as exc:
        logger.error("Progress write failed: %s", exc)
        raise HTTPException(status_code=503, detail="progress not saved; retry")
    return record.model_dump(mode="json")


@app.get("/progress/{student_id}/summary")
def progress_summary(request: Request, student_id: str):
    identity = _identity(request)
    try:
        summary = get_services(request.app).tracker.student_summary(identity, student_id)
    except AccessDenied:
        raise HTTPException(status_code=403, detail="forbidden")
    except ExpiredCredential:
        raise HTTPException(status_code=401, detail="credential expired")
    return summary.model_dump(mode="json")


@app.get("/progress/{student_id}/records")
def progress_records(request: Request, student_id: str, limit: int = 100):
    identity = _identity(request)
    try:
        records = get_services(request.app).tracker.student_records(identity, student_id, limit)
    except AccessDenied:
        raise HTTPException(status_code=403, detail="forbidden")
    except ExpiredCredential:
        raise HTTPException(status_code=401, detail="credential expired")
    return [record.model_dump(mode="json") for record in records]


# ---------- Security ----------
@app.get("/security/alerts")
def security_alerts(
    request: Request,
    kind: Optional[str] = None,
    severity: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 100,
):
    _require_role(request, "teacher", "admin")
    alerts = db.list_security_alerts(kind=kind, severity=severity, subject_id=subject_id, limit=limit)
    return [alert.model_dump(mode="json") for alert in alerts]


@app.get("/security/metrics")
def security_metrics(request: Request):
    _require_role(request, "admin")
    return get_services(request.app).monitor.metrics()


# ---------- Retention ----------
@app.post("/retention/sweep")
def retention_sweep(request: Request):
    _require_role(request, "admin")
    report = get_services(request.app).retention.run_sweep()
    return report.model_dump(mode="json")


@app.get("/retention/runs")
def retention_runs(request: Request, limit: int = 20):
    _require_role(request, "admin")
    return db.list_retention_runs(limit)


@app.get("/retention/policies")
def retention_policies(request: Request):
    _require_role(request, "admin")
    return [policy.model_dump() for policy in db.list_retention_policies()]


# ---------- Ops ----------
@app.get("/cache/stats")
def cache_stats(request: Request):
    _require_role(request, "admin")
    return get_services(request.app).cache.stats()


@app.get("/")
def root():
    return {"service": "progresshub", "status": "ok"}


@app.get("/health")
def health(request: Request):
    services = get_services(request.app)
    db_ok = db.ping()
    return {
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "cache": services.cache.stats(),
        "broadcast": services.hub.stats(),
        "retention": {"state": services.retention.state.value, "running": services.retention.running},
    }


# ---------- Live channel ----------
def _may_subscribe(identity: IdentityContext, channel: str) -> bool:
    if identity.is_staff:
        return True
    return channel == student_channel(identity.subject_id)


@app.websocket("/ws")
async def progress_socket(websocket: WebSocket):
    services = get_services(websocket.app)
    token = websocket.query_params.get("token") or extract_bearer(websocket.headers.get("authorization"))
    source = websocket.client.host if websocket.client else None
    try:
        identity = await run_in_threadpool(services.authenticator.authenticate, token, source)
    except AuthError as exc:
        await websocket.close(code=4401, reason=exc.kind)
        return

    await websocket.accept()
    connection_id = uuid4().hex
    # The drain task and this handler both write to the socket.
    send_lock = asyncio.Lock()
    closed = False

    async def _send_json(data: dict) -> None:
        async with send_lock:
            if not closed:
                await websocket.send_json(data)

    async def _close_expired() -> None:
        nonlocal closed
        async with send_lock:
            if closed:
                return
            closed = True
            await websocket.close(code=4401, reason="expired")
        logger.info("WebSocket %s closed: credential for %s expired", connection_id, identity.subject_id)

    async def _send(event) -> None:
        if identity.is_expired():
            await _close_expired()
            raise ExpiredCredential("credential expired", subject_id=identity.subject_id)
        await _send_json(event.model_dump(mode="json"))

    async def _expire_at_deadline() -> None:
        await asyncio.sleep(max(0.0, (identity.expires_at - utcnow()).total_seconds()))
        services.hub.unsubscribe(connection_id)
        await _close_expired()

    channel = student_channel(identity.subject_id)
    services.hub.subscribe(connection_id, identity.subject_id, channel, _send)
    expiry = asyncio.create_task(_expire_at_deadline())
    await _send_json({"type": "subscribed", "channel": channel, "connection_id": connection_id})
    try:
        while not closed:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await _send_json({"type": "error", "detail": "invalid json"})
                continue
            if closed:
                break
            if identity.is_expired():
                await _close_expired()
                break
            if not isinstance(message, dict):
                await _send_json({"type": "error", "detail": "expected an object"})
                continue
            message_type = message.get("type")
            if message_type == "ping":
                services.hub.prune_dead()
                await _send_json({"type": "pong", "timestamp": db.utc_timestamp()})
            elif message_type == "subscribe":
                requested = str(message.get("channel") or "")
                if not requested or not _may_subscribe(identity, requested):
                    services.monitor.record_outcome(
                        PrivilegeViolation(subject_id=identity.subject_id, resource=f"ws:{requested}")
                    )
                    await _send_json({"type": "error", "detail": "channel not allowed"})
                    continue
                services.hub.subscribe(connection_id, identity.subject_id, requested, _send)
                await _send_json({"type": "subscribed", "channel": requested, "connection_id": connection_id})
            else:
                logger.warning("Unknown WebSocket message type: %s", message_type)
    except WebSocketDisconnect:
        pass
    finally:
        expiry.cancel()
        services.hub.unsubscribe(connection_id)
