import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .exceptions import OTEngineError
from .limiter import limiter
from .routers import allocations, health, ot_rooms, ot_slots
from .seed import create_initial_data

settings = get_settings()
logger = setup_logging()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(OTEngineError)
async def ot_engine_error_handler(request: Request, exc: OTEngineError):
    logger.info(
        "request_rejected", path=request.url.path, error=exc.code, field=exc.field, slot_ids=exc.slot_ids,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def on_startup():
    create_tables()
    if settings.seed_demo_data:
        create_initial_data()
    logger.info("startup_complete", environment=settings.environment, seeded=settings.seed_demo_data)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(ot_rooms.router, prefix="/api/v1")
app.include_router(ot_slots.router, prefix="/api/v1")
app.include_router(allocations.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("ot_allocation.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
