from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.exceptions import (
    SupportError,
    support_exception_handler,
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.db.init_db import init_models
from app.db.session import engine, AsyncSessionLocal
from app.services.operator_directory import OperatorDirectory
from app.services.support_hub import SupportHub

# Setup Logging
setup_logging()
logger = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager for the application.
    Presence starts empty on every boot; clients reconnect and re-register.
    """
    logger.info("startup", project=settings.PROJECT_NAME, environment=settings.ENVIRONMENT)
    await init_models(engine)
    app.state.support_hub = SupportHub(AsyncSessionLocal, operator_directory=OperatorDirectory())
    yield
    await app.state.support_hub.shutdown()
    await engine.dispose()
    logger.info("shutdown")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Real-time support chat for account holders, guests and operators",
    lifespan=lifespan,
    docs_url=f"{settings.API_V1_STR}/docs",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

# Middleware: CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception Handlers
app.add_exception_handler(SupportError, support_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

# Health Check
@app.get("/health", tags=["system"])
async def health_check():
    """
    Public health check endpoint for load balancers.
    """
    return {"status": "ok", "environment": settings.ENVIRONMENT}


from app.api.v1.public import support as public_support
from app.api.v1.admin import support as admin_support
from app.api.v1.ws import support as ws_support
from app.api.v1 import files

app.include_router(public_support.router, prefix=f"{settings.API_V1_STR}/support", tags=["support"])
app.include_router(admin_support.router, prefix=f"{settings.API_V1_STR}/admin/support", tags=["admin-support"])
app.include_router(ws_support.router, prefix=f"{settings.API_V1_STR}/ws")
app.include_router(files.router, prefix="/files", tags=["files"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
