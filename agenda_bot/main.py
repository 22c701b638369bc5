from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from agenda_bot.config import settings
from agenda_bot.database import get_db
from agenda_bot.logging_config import setup_logging
from agenda_bot.routers import gateway_admin, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Agenda Bot",
    description="WhatsApp booking assistant",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(gateway_admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
