import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
from fastapi.middleware.cors import CORSMiddleware

from app.database import engine
from app.models.base import Base
import app.models  # noqa: F401 - register all tables for create_all
from app.api.deps import get_ai_service, get_email_service
from app.api.endpoints import proposals, rfps, vendors
from app.errors import ProcurementError
from app.services.ai_service import AIService
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="RFP Procurement API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:5173")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rfps.router)
app.include_router(vendors.router)
app.include_router(proposals.router)


@app.exception_handler(ProcurementError)
async def procurement_error_handler(request: Request, exc: ProcurementError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.label, "details": exc.details})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation error", "details": details})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})


@app.get("/health")
def health(
    ai: AIService = Depends(get_ai_service),
    notifier: EmailService = Depends(get_email_service),
):
    """Health check endpoint for load balancers and readiness probes."""
    return {
        "status": "ok",
        "service": "rfp-procurement-backend",
        "aiProvider": ai.provider,
        "emailConfigured": notifier.configured,
    }


@app.get("/email/test")
def email_test(notifier: EmailService = Depends(get_email_service)):
    """Report SMTP configuration and whether the server accepts our credentials."""
    if not (notifier.configured and notifier.from_email):
        return JSONResponse(
            status_code=400,
            content={
                "configured": False,
                "error": "Email not configured",
                "message": "Missing SMTP configuration",
                "required": ["SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "FROM_EMAIL"],
            },
        )
    return {
        "configured": True,
        "verified": notifier.verify_connection(),
        "smtp": {
            "host": notifier.host,
            "port": notifier.port,
            "user": notifier.user,
            "from": notifier.from_email,
        },
    }
