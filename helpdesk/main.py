from __future__ import annotations

from fastapi import FastAPI

from helpdesk.api.routes import customers, departments, sync, tickets
from helpdesk.core.config import get_settings
from helpdesk.core.database import db
from helpdesk.core.logging import configure_logging, log_info
from helpdesk.services import ticket_audit
from helpdesk.services.scheduler import scheduler_service

configure_logging()
settings = get_settings()

tags_metadata = [
    {
        "name": "Helpdesk tickets",
        "description": "Ticket updates, messages, forwarding, client association and the audit trail.",
    },
    {
        "name": "Helpdesk departments",
        "description": "Mail source configuration and on-demand department syncs.",
    },
    {
        "name": "Helpdesk sync",
        "description": "Bulk email-to-ticket runs and worker status.",
    },
    {
        "name": "Helpdesk clients",
        "description": "Customer lookup, ticket history and association backfill.",
    },
]

app = FastAPI(
    title=settings.app_name,
    description="Converts department mailboxes into helpdesk tickets and exposes the ticket audit trail.",
    openapi_tags=tags_metadata,
)

app.include_router(tickets.router)
app.include_router(departments.router)
app.include_router(sync.router)
app.include_router(customers.router)


@app.get("/health", include_in_schema=False)
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
async def on_startup() -> None:
    await db.connect()
    await db.run_migrations()
    await scheduler_service.start()
    log_info("Application started", environment=settings.environment)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await scheduler_service.stop()
    await ticket_audit.wait_for_pending()
    await db.disconnect()
    log_info("Application shutdown")
