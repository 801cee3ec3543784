"""FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import setup_logging
from app.api.routes import health
from app.api.routes.billing import router as billing_router

# Setup logging
setup_logging()

# Create FastAPI app
app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Subscription billing backend for FrameVault",
    version="1.0.0",
)

# The frontend calls checkout/portal/entitlement from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(billing_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": f"{settings.PROJECT_NAME} API", "version": "1.0.0"}
