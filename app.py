"""
Orchestration Backend - Unified Application Entry Point
Mounts the orchestration service under a single FastAPI application
"""

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from database import init_database
from services.notifications import event_stream
from services.orchestration import app as orchestration_module
from shared.utils import config, setup_logging

logger = setup_logging("orchestration-backend")

orchestration_app = orchestration_module.app

app = FastAPI(
    title="Orchestration Backend API",
    description="""
    Job and transaction orchestration for document and video AI processing.

    Jobs fan out to processing providers, results are consolidated, low
    confidence results go through human review, and finished jobs are
    post-processed and archived.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Health",
            "description": "Service health and status endpoints",
        },
        {
            "name": "Orchestration",
            "description": "Jobs, review cases, provider completions and dead letters - mounted at /api/v1/orchestration",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes to exclude (internal FastAPI docs routes)
EXCLUDED_PATHS = {"/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc"}

# Include Orchestration routes with prefix
for route in orchestration_app.routes:
    if hasattr(route, "path") and hasattr(route, "endpoint"):
        # Skip internal documentation routes
        if route.path in EXCLUDED_PATHS:
            continue
        route_kwargs = {
            "path": f"/api/v1/orchestration{route.path}",
            "endpoint": route.endpoint,
            "methods": route.methods,
            "tags": ["Orchestration"],
        }
        if hasattr(route, "name"):
            route_kwargs["name"] = f"orchestration_{route.name}"
        if hasattr(route, "response_model"):
            route_kwargs["response_model"] = route.response_model
        if getattr(route, "status_code", None):
            route_kwargs["status_code"] = route.status_code
        app.add_api_route(**route_kwargs)


@app.on_event("startup")
async def startup() -> None:
    init_database()
    await orchestration_module.start_background_tasks()
    logger.info("Orchestration backend started")


@app.on_event("shutdown")
async def shutdown() -> None:
    await orchestration_module.stop_background_tasks()


@app.websocket("/ws/jobs/{job_id}")
async def job_events_endpoint(websocket: WebSocket, job_id: str):
    """WebSocket endpoint streaming lifecycle events of one job.

    The client is subscribed to ``job_id`` on connect and may follow more jobs
    with ``subscribe``/``unsubscribe`` actions.
    """
    client_id = websocket.query_params.get("client_id")
    assigned_client_id = await event_stream.connect(websocket, client_id)
    await event_stream.subscribe(assigned_client_id, job_id)
    await websocket.send_json({"event": "connected", "client_id": assigned_client_id, "job_id": job_id})

    try:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")

            if action == "subscribe":
                target = message.get("job_id")
                if not target:
                    await websocket.send_json({"event": "error", "message": "Missing job_id for subscribe"})
                    continue
                await event_stream.subscribe(assigned_client_id, target)
                await websocket.send_json({"event": "subscribed", "job_id": target})
            elif action == "unsubscribe":
                target = message.get("job_id")
                await event_stream.unsubscribe(assigned_client_id, target)
                await websocket.send_json({"event": "unsubscribed", "job_id": target})
            elif action == "ping":
                await websocket.send_json({"event": "pong"})
            else:
                await websocket.send_json({"event": "error", "message": f"Unknown action: {action}"})
    except WebSocketDisconnect:
        await event_stream.disconnect(assigned_client_id)
    except Exception:
        await event_stream.disconnect(assigned_client_id)
        raise


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with service information and API navigation"""
    return {
        "service": "Orchestration Backend API",
        "version": "1.0.0",
        "services": {
            "orchestration": {
                "base_url": "/api/v1/orchestration",
                "health": "/api/v1/orchestration/health",
                "events": "/ws/jobs/{job_id}",
            },
        },
        "documentation": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for all services"""
    return {
        "status": "healthy",
        "services": {
            "api_gateway": "operational",
            "orchestration": "operational",
            "scheduler": "running" if orchestration_module.scheduler.running else "stopped",
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Orchestration Backend on http://0.0.0.0:8000")
    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
