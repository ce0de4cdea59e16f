"""
ClickHub - HubSpot <-> ClickUp Sync
FastAPI application receiving HubSpot and ClickUp webhooks

Webhooks are acknowledged immediately; reconciliation runs in background
tasks. Supports both local development (SQLite) and Vercel deployment
(PostgreSQL).
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, BackgroundTasks, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from database import RegistryError
from sync_engine import Config, ReconciliationWorker, build_worker, load_config, parse_hubspot_event

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Global state
worker: Optional[ReconciliationWorker] = None
sync_config: Optional[Config] = None
engine_error: Optional[str] = None
webhooks_enabled = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    global worker, sync_config, engine_error, webhooks_enabled

    # Startup
    try:
        sync_config = load_config()
        webhooks_enabled = sync_config.webhooks_enabled
        worker = build_worker(sync_config)
        worker.scheduler.start()
        logger.info("✓ Reconciliation worker initialized")
    except Exception as e:
        engine_error = str(e)
        logger.error(f"Failed to initialize sync engine: {e}")

    logger.info("✓ ClickHub server started")

    yield

    # Shutdown
    if worker:
        worker.scheduler.shutdown(wait=False)
        worker.registry.close()


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="ClickHub",
    description="HubSpot tickets and tasks mirrored as ClickUp tasks",
    version=VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models
class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    engine_ready: bool
    engine_error: Optional[str] = None
    in_flight: int = 0
    in_flight_keys: List[str] = []
    pending_rechecks: List[str] = []


def _unavailable() -> Optional[JSONResponse]:
    if not webhooks_enabled:
        return JSONResponse(
            status_code=403,
            content={"status": "error", "message": "Webhooks are disabled"}
        )
    if not worker:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Sync engine not available"}
        )
    return None


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    state: Dict[str, Any] = worker.status() if worker else {}
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        engine_ready=worker is not None,
        engine_error=engine_error if worker is None else None,
        in_flight=state.get("in_flight", 0),
        in_flight_keys=state.get("in_flight_keys", []),
        pending_rechecks=state.get("pending_rechecks", []),
    )


@app.get("/ping", response_class=PlainTextResponse)
async def ping():
    return "pong"


# ============================================
# WEBHOOK ENDPOINTS
# ============================================

@app.post("/webhook/hubspot")
async def hubspot_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Webhook endpoint for HubSpot ticket and task notifications.
    HubSpot sends a batch of events; each one becomes a background unit.
    """
    blocked = _unavailable()
    if blocked:
        return blocked

    try:
        body = await request.json()
    except ValueError:
        logger.warning("HubSpot webhook with malformed body ignored")
        return {"status": "ignored", "message": "Malformed JSON body"}

    logger.info(f"📥 Received HubSpot webhook with {len(body) if isinstance(body, list) else 1} event(s)")

    events = body if isinstance(body, list) else [body]
    queued_count = 0

    for record in events:
        event = parse_hubspot_event(record)
        if event is None:
            continue
        background_tasks.add_task(worker.handle_source_event, event)
        queued_count += 1
        logger.info(f"✓ Queued {event.event_kind.value} for {event.key}"
                    f"{f' (property: {event.field})' if event.field else ''}")

    if queued_count > 0:
        return {"status": "success", "message": f"Sync queued for {queued_count} events"}

    return {"status": "ignored", "message": "No ticket or task events in payload"}


@app.post("/webhook/clickup/tasks")
async def clickup_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Webhook endpoint for ClickUp task notifications.
    ClickUp sends one event per request with the changed history items.
    """
    blocked = _unavailable()
    if blocked:
        return blocked

    try:
        body = await request.json()
    except ValueError:
        logger.warning("ClickUp webhook with malformed body ignored")
        return {"status": "ignored", "message": "Malformed JSON body"}

    if not isinstance(body, dict) or not body.get("task_id"):
        return {"status": "ignored", "message": "No task ID in payload"}

    logger.info(f"📥 Received ClickUp webhook: {body.get('event')} (task {body['task_id']})")
    background_tasks.add_task(worker.handle_target_event, body)
    return {"status": "success", "message": f"Sync queued for task {body['task_id']}"}


# ============================================
# REGISTRY & LOGS
# ============================================

@app.get("/api/synced-items")
async def get_synced_items():
    """Synced pair counts and the most recent pairs"""
    if not worker:
        return JSONResponse(status_code=503, content={"status": "error", "message": "Sync engine not available"})
    try:
        return worker.registry.get_registry_report()
    except RegistryError as e:
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})


@app.get("/api/synced-items/{source_type}/{source_id}")
async def get_synced_item(source_type: str, source_id: str):
    if not worker:
        return JSONResponse(status_code=503, content={"status": "error", "message": "Sync engine not available"})
    try:
        pair = worker.registry.find_by_source(source_id, source_type)
    except RegistryError as e:
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})
    if pair is None:
        return JSONResponse(status_code=404, content={"status": "not_found",
                                                      "message": f"{source_type} {source_id} is not synced"})
    return {
        "source_object_id": pair.source_object_id,
        "source_object_type": pair.source_object_type,
        "target_object_id": pair.target_object_id,
        "created_at": pair.created_at.isoformat() if pair.created_at else None,
    }


@app.get("/api/sync/logs")
async def get_sync_logs(limit: int = Query(50, ge=1, le=500)):
    """Most recent reconciliation outcomes"""
    if not worker:
        return JSONResponse(status_code=503, content={"status": "error", "message": "Sync engine not available"})
    try:
        return {"logs": worker.registry.list_sync_logs(limit=limit)}
    except RegistryError as e:
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})


def start_server():
    """Start the server manually"""
    import uvicorn
    print("🔗 Starting ClickHub (HubSpot <-> ClickUp sync)...")
    print("📖 API Documentation at: http://localhost:8004/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run(app, host="0.0.0.0", port=8004)
    except KeyboardInterrupt:
        print("\n👋 Server stopped")

if __name__ == "__main__":
    start_server()
