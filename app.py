import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger

# Import our modules
from config import Settings, get_settings
from integrations.contact_store import ContactStore
from integrations.transport import MailTransport, resolve_transport
from intake.errors import InvalidTransitionError, PersistenceError, RecordNotFoundError
from intake.service import IntakeService

VERSION = "1.0.0"


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    if settings.log_file:
        logger.add(settings.log_file, rotation="1 day", retention="7 days", level=settings.log_level)


def create_app(settings: Optional[Settings] = None, transport: Optional[MailTransport] = None,
               store: Optional[ContactStore] = None) -> FastAPI:
    """
    Build the HTTP layer around the intake service.

    The mail transport is resolved once at startup unless one is supplied.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting contact intake ({settings.environment})")
        mail_transport = transport or await resolve_transport(settings)
        contact_store = store if store is not None else ContactStore(settings.redis_url)

        app.state.transport = mail_transport
        app.state.store = contact_store
        app.state.intake = IntakeService(settings, mail_transport, store=contact_store)
        app.state.started_at = time.time()
        yield
        logger.info("Contact intake stopped")

    app = FastAPI(
        title="Contact Intake & Notification Service",
        description="Website contact form intake with owner notification and submitter confirmation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    def get_store(request: Request) -> ContactStore:
        return request.app.state.store

    def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
        if settings.admin_token and x_admin_token != settings.admin_token:
            raise HTTPException(status_code=401, detail="Invalid admin token")

    @app.post("/api/contact/send")
    async def send_contact(req: Request):
        """
        Contact form submission.

        Expected payload:
        {
            "name": "Jean Dupont",
            "email": "jean@example.com",
            "message": "Bonjour, je suis intéressé par vos services web.",
            "phone": "+221 77 000 00 00",
            "company": "Acme",
            "budget": "5k-10k",
            "timeline": "1month"
        }
        """
        try:
            payload = await req.json()
        except ValueError:
            logger.warning("Contact submission with unreadable JSON body")
            payload = {}

        request_meta = {
            "ip": req.client.host if req.client else None,
            "user_agent": req.headers.get("user-agent"),
            "referer": req.headers.get("referer"),
        }

        result = await req.app.state.intake.submit_contact(payload, request_meta)
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.get("/api/contact/test")
    def contact_test():
        return {
            "success": True,
            "message": "Contact API operational",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "environment": settings.environment,
        }

    @app.get("/health")
    async def health(req: Request):
        """Health check endpoint."""
        store = req.app.state.store
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "uptime": time.time() - req.app.state.started_at,
            "version": VERSION,
            "environment": settings.environment,
            "services": {
                "email": await req.app.state.transport.health_check(),
                "store": store.backend if await run_in_threadpool(store.ping) else "disconnected",
                "workflow": "ready",
            },
        }

    @app.get("/admin/contacts/stats", dependencies=[Depends(require_admin)])
    def contact_stats(store: ContactStore = Depends(get_store)):
        return store.stats()

    @app.get("/admin/contacts/{record_id}", dependencies=[Depends(require_admin)])
    def get_contact(record_id: str, store: ContactStore = Depends(get_store)):
        return store.get(record_id)

    @app.post("/admin/contacts/{record_id}/read", dependencies=[Depends(require_admin)])
    def mark_contact_read(record_id: str, store: ContactStore = Depends(get_store)):
        return store.mark_read(record_id)

    @app.post("/admin/contacts/{record_id}/spam", dependencies=[Depends(require_admin)])
    def mark_contact_spam(record_id: str, store: ContactStore = Depends(get_store)):
        return store.mark_spam(record_id)

    async def read_payload(req: Request) -> dict:
        try:
            payload = await req.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON")
        return payload if isinstance(payload, dict) else {}

    @app.post("/admin/contacts/{record_id}/notes", dependencies=[Depends(require_admin)])
    async def add_contact_note(record_id: str, req: Request, store: ContactStore = Depends(get_store)):
        payload = await read_payload(req)
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise HTTPException(status_code=400, detail="Note content is required")
        author = payload.get("author") if isinstance(payload.get("author"), str) else None
        return await run_in_threadpool(store.add_note, record_id, content.strip(), author or "System")

    @app.post("/admin/contacts/{record_id}/status", dependencies=[Depends(require_admin)])
    async def set_contact_status(record_id: str, req: Request, store: ContactStore = Depends(get_store)):
        payload = await read_payload(req)
        status = payload.get("status")
        if not isinstance(status, str) or not status:
            raise HTTPException(status_code=400, detail="Status is required")
        return await run_in_threadpool(store.set_status, record_id, status)

    @app.post("/admin/contacts/cleanup", dependencies=[Depends(require_admin)])
    def cleanup_contacts(days: int = 365, store: ContactStore = Depends(get_store)):
        return {"deleted": store.clean_old_contacts(days)}

    # Error handlers
    @app.exception_handler(RecordNotFoundError)
    async def not_found_handler(request: Request, exc: RecordNotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "message": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"success": False, "message": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        logger.error(f"Store failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"success": False, "message": "Contact store unavailable"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        content = {"success": False, "message": "Internal server error"}
        if not settings.is_production:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


configure_logging(get_settings())

# Initialize FastAPI app
app = create_app()

if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Contact Intake & Notification Service")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=not get_settings().is_production,
        log_level="info"
    )
