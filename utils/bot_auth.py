"""
Shared-secret authentication for the regional judge bots and the chain feed push
"""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

from config import Config

logger = logging.getLogger(__name__)

BOT_SECRET_HEADER = "X-Bot-Secret"


def verify_bot_secret(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """Constant-time comparison; an unset secret rejects everything"""
    expected = expected if expected is not None else Config.BOT_SHARED_SECRET
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_bot(request: Request) -> None:
    """FastAPI dependency guarding bot-only routes"""
    if not verify_bot_secret(request.headers.get(BOT_SECRET_HEADER)):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"🔒 BOT_AUTH_FAILED: {request.method} {request.url.path} from {client_ip}")
        raise HTTPException(status_code=401, detail="Invalid bot credentials")
