from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from relay.config import settings
from relay.database import get_db
from relay.logging_config import setup_logging
from relay.models import Conversation, Message, Tenant
from relay.routers import admin, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="WhatsApp Relay",
    description="Multi-tenant WhatsApp inbound pipeline",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "tenants": db.query(Tenant).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
    }
