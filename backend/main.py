import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import settings
from db.database import engine, Base, run_startup_migrations
from db.errors import ConstraintViolationError, InvalidPayloadError, RecordNotFoundError
from auth.routes import router as auth_router
from api.lab_results import router as lab_results_router, markers_router
from api.health_metrics import router as health_metrics_router
from api.insights import router as insights_router
from api.events import router as events_router
from api.connected_services import router as connected_services_router
from api.workouts import router as workouts_router, sets_router as workout_sets_router
from api.subscription import router as subscription_router
from api.dashboard import router as dashboard_router
from services.scheduler import build_default_scheduler
from utils.logging_utils import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

settings.validate_security_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)
run_startup_migrations()

app = FastAPI(title=settings.APP_NAME, version="1.0.0")
scheduler = build_default_scheduler()

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    response.headers["Content-Security-Policy"] = settings.SECURITY_CSP
    return response


@app.exception_handler(RecordNotFoundError)
async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConstraintViolationError)
async def constraint_violation_handler(request: Request, exc: ConstraintViolationError):
    logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidPayloadError)
async def invalid_payload_handler(request: Request, exc: InvalidPayloadError):
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": str(exc), "errors": exc.errors}),
    )


@app.on_event("startup")
async def start_scheduler():
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
        logger.info("Background scheduler started")


@app.on_event("shutdown")
async def stop_scheduler():
    await scheduler.stop()


# Routers
app.include_router(auth_router, prefix="/api")
app.include_router(dashboard_router, prefix="/api")
app.include_router(lab_results_router, prefix="/api")
app.include_router(markers_router, prefix="/api")
app.include_router(health_metrics_router, prefix="/api")
app.include_router(insights_router, prefix="/api")
app.include_router(events_router, prefix="/api")
app.include_router(connected_services_router, prefix="/api")
app.include_router(workouts_router, prefix="/api")
app.include_router(workout_sets_router, prefix="/api")
app.include_router(subscription_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}


# Serve frontend static files (in production)
static_dir = Path(__file__).parent / "static"
if static_dir.exists():
    app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
