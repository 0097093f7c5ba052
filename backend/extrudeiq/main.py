"""
ExtrudeIQ Quote API
FastAPI backend with async PostgreSQL and JWT auth: versioned extrusion quotes
priced from effective-dated material prices, plus a parametric die estimator.
"""
import os
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

load_dotenv()

from extrudeiq.services.logging_config import setup_logging  # noqa: E402
from extrudeiq.services.middleware import RequestTimingMiddleware  # noqa: E402
from extrudeiq.services.errors import QuoteEngineError  # noqa: E402

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("extrudeiq-api")

# Startup validation
for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from extrudeiq.db import engine, init_db
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="ExtrudeIQ Quote API",
    version="1.0.0",
    description="Versioned aluminum extrusion quotes and die cost estimates",
    lifespan=lifespan,
)


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)


@app.exception_handler(QuoteEngineError)
async def quote_engine_error_handler(request: Request, exc: QuoteEngineError):
    request_id = getattr(request.state, "request_id", None)
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    logger.log(
        level,
        f"{exc.code}: {exc.message}",
        extra={"request_id": request_id, "http_path": request.url.path, "http_status": exc.http_status},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Routers
from extrudeiq.api.quote_routes import router as quote_router  # noqa: E402
from extrudeiq.api.die_routes import router as die_router  # noqa: E402

app.include_router(quote_router)
app.include_router(die_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("extrudeiq.main:app", host="0.0.0.0", port=8000, reload=True)
