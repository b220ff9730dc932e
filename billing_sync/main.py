import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Cookie, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from billing_sync import app_context
from billing_sync.app.billing import BillingUser
from billing_sync.app.billing.repository import ensure_billing_schema
from billing_sync.app.routes.billing import router as billing_router
from billing_sync.app.services.billing import get_billing_config


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("billing")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]


def get_conn():
    return psycopg2.connect(**get_billing_config().db)


def resolve_user_from_session_token(session_token: str) -> Optional[BillingUser]:
    try:
        payload: Dict[str, Any] = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    subject = payload.get("sub")
    email = payload.get("email")
    if subject is None or not email:
        return None
    return BillingUser(id=str(subject), email=str(email), name=payload.get("name"))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> BillingUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app_context.configure(
    get_conn=get_conn,
    get_current_user=get_current_user,
)

app = FastAPI(title="Billing Sync API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.on_event("startup")
def setup_billing_schema() -> None:
    if os.getenv("BILLING_AUTO_MIGRATE", "1").lower() not in {"1", "true", "yes"}:
        return
    try:
        ensure_billing_schema()
    except psycopg2.Error:
        logger.exception("Failed to ensure billing schema")
        raise
    config = get_billing_config()
    logger.info(
        "Billing providers configured stripe=%s myob=%s",
        config.is_stripe_configured,
        config.is_myob_configured,
    )


@app.get("/api/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
