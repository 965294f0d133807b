from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_bool, env_str
from database import init_db
from core.logging import get_logger
from web import routers
from web.background.prompt_optimizer_loop import start_prompt_optimizer_loop, stop_prompt_optimizer_loop
from web.deps import get_prompt_optimizer, reset_dependency_cache

logger = get_logger(__name__)

app = FastAPI(
    title="Trial Gate API",
    description="Anonymous trial quotas, login-timing signals and login-prompt optimization.",
    version="0.1.0",
)

origins = [
    origin.strip()
    for origin in (env_str("CORS_ALLOW_ORIGINS") or "http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After"],
)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    """Basic liveness response."""
    return {"status": "ok", "message": "Trial Gate API is running."}


@app.get("/healthz", include_in_schema=False)
def container_health_check():
    """Liveness check for container orchestrators."""
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.trial.router, prefix="/api/v1")
app.include_router(routers.behavior.router, prefix="/api/v1")
app.include_router(routers.prompts.router, prefix="/api/v1")
app.include_router(routers.health.router, prefix="/api/v1")


@app.on_event("startup")
async def ensure_schema() -> None:
    if not env_bool("DATABASE_AUTO_CREATE", True):
        return
    init_db()


@app.on_event("startup")
async def launch_background_jobs() -> None:
    """Start the prompt optimizer batch loop unless disabled."""
    if not env_bool("PROMPT_OPTIMIZER_LOOP_ENABLED", True):
        logger.info("Prompt optimizer loop disabled by configuration.")
        return
    try:
        start_prompt_optimizer_loop(get_prompt_optimizer())
    except Exception:  # the API keeps serving trials without the optimizer loop
        logger.exception("Prompt optimizer loop failed to start.")


@app.on_event("shutdown")
async def stop_background_jobs() -> None:
    stop_prompt_optimizer_loop()
    reset_dependency_cache()
