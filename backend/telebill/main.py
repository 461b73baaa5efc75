"""FastAPI application entry point."""
from fastapi import FastAPI

from telebill.api.routes import health
from telebill.api.routes.admin import router as admin_router
from telebill.core.config import settings
from telebill.core.logging import setup_logging

API_VERSION = "1.0.0"

setup_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Admin surface for subscription billing and lifecycle runs",
    version=API_VERSION,
)

app.include_router(health.router, tags=["health"])
app.include_router(admin_router)


@app.get("/")
async def root():
    return {"service": settings.PROJECT_NAME, "version": API_VERSION}
