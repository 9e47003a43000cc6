"""
Credit Billing Backend API

Prepaid credit billing for the agent platform, backed by Stripe customer
balances.
Architecture:
1. Load environment and configure logging
2. Initialize FastAPI app with CORS support
3. Include billing routes
4. Render auth and billing errors with their error codes
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables early
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from auth.exceptions import AuthException
from billing.exceptions import BillingException
from billing.router import router as billing_router
from db import models, database

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Webhook event log table; a separate migration script exists for production
    try:
        models.Base.metadata.create_all(bind=database.engine)
        logger.info("✓ Database tables created successfully")
    except SQLAlchemyError as e:
        logger.warning(f"⚠ Could not create database tables at startup: {e}")
    yield


# ============================================================================
# INITIALIZE APP
# ============================================================================

app = FastAPI(
    title="Credit Billing Backend",
    description="Prepaid credits, subscriptions and Stripe webhooks for the agent platform",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(billing_router)


# Global handler for AuthException so responses include the configured error_code
@app.exception_handler(AuthException)
async def handle_auth_exception(request, exc: AuthException):
    content = {"detail": exc.detail}
    if getattr(exc, "error_code", None):
        content["error_code"] = exc.error_code
    # Use the headers if present
    headers = exc.headers if getattr(exc, "headers", None) else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(BillingException)
async def handle_billing_exception(request, exc: BillingException):
    if exc.status_code >= 500:
        logger.error(f"✗ {exc.error_code} on {request.url.path}: {exc.detail} {exc.context}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================================================
# RUN
# ============================================================================


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="127.0.0.1", port=port)
