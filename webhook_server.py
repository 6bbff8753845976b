"""
FastAPI callback server for the regional judge bots and the chain feed push

Handlers authenticate, parse and map core results to status codes. All
business rules live in the services. Store work runs in worker
threads, never on the event loop.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from database import test_connection
from services.bot_status_service import bot_status_service
from services.deposit_listener import TransferEvent, deposit_listener
from services.duel_service import DuelResult, DuelService
from utils.bot_auth import require_bot
from utils.datetime_helpers import utcnow
from utils.ledger_exceptions import LedgerError, ValidationError

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "invalid_transition": 409,
    "duplicate_event": 409,
    "insufficient_funds": 402,
    "not_found": 404,
    "validation_error": 400,
    "unauthorized": 403,
}

app = FastAPI(
    title="Duel Ledger Callback Server",
    description="Bot result callbacks, heartbeats and chain feed push",
)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _int_field(body: Dict[str, Any], name: str) -> int:
    value = body.get(name)
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"'{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"'{name}' must be an integer")


def _match_data(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    match_data = body.get("match_data")
    if match_data is not None and not isinstance(match_data, dict):
        raise HTTPException(status_code=400, detail="'match_data' must be an object")
    return match_data


def _duel_response(result: DuelResult) -> JSONResponse:
    payload = {
        "success": result.success,
        "duel_id": result.duel_id,
        "status": result.status,
        "winner_id": result.winner_id,
        "payout": result.payout,
    }
    if result.success:
        return JSONResponse(status_code=200, content=payload)
    payload.update({"error": result.error, "message": result.message})
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(result.error, 400), content=payload)


# ===== STATUS =====

@app.get("/api/status/health")
async def health_check():
    """Process-level liveness; intentionally does not touch the database"""
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@app.get("/api/status/db")
async def database_health():
    if await asyncio.to_thread(test_connection):
        return {"status": "ok", "database": "connected"}
    return JSONResponse(status_code=503, content={"status": "error", "database": "disconnected"})


@app.post("/api/status/heartbeat", dependencies=[Depends(require_bot)])
async def bot_heartbeat(request: Request):
    body = await _json_body(request)
    try:
        bot_status_service.record_heartbeat(body.get("region"))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Heartbeat received."}


@app.get("/api/status/bots")
async def bot_statuses():
    return bot_status_service.get_statuses()


# ===== BOT CALLBACKS =====

@app.post("/api/bot/match-started", dependencies=[Depends(require_bot)])
async def bot_match_started(request: Request):
    body = await _json_body(request)
    result = await asyncio.to_thread(DuelService.mark_match_started, _int_field(body, "duel_id"), _match_data(body))
    return _duel_response(result)


@app.post("/api/bot/result", dependencies=[Depends(require_bot)])
async def bot_report_result(request: Request):
    body = await _json_body(request)
    duel_id = _int_field(body, "duel_id")
    result = await asyncio.to_thread(DuelService.report_result, duel_id, _int_field(body, "winner_id"), _match_data(body))
    if not result.success:
        logger.info(f"BOT_RESULT_NOT_APPLIED: duel #{duel_id} ({result.error})")
    return _duel_response(result)


@app.post("/api/bot/forfeit", dependencies=[Depends(require_bot)])
async def bot_report_forfeit(request: Request):
    body = await _json_body(request)
    duel_id = _int_field(body, "duel_id")
    result = await asyncio.to_thread(
        DuelService.report_forfeit, duel_id, _int_field(body, "forfeiting_player_id"), _match_data(body)
    )
    return _duel_response(result)


# ===== CHAIN FEED PUSH =====

@app.post("/api/deposits/feed", dependencies=[Depends(require_bot)])
async def deposit_feed(request: Request):
    """Transfer sightings and drop notices pushed by the chain data provider"""
    body = await _json_body(request)

    try:
        if body.get("dropped"):
            tx_hash = str(body.get("tx_hash") or "").strip()
            if not tx_hash:
                raise ValidationError("Drop notice without tx_hash")
            progress = await asyncio.to_thread(deposit_listener.on_dropped, tx_hash)
        else:
            event = TransferEvent.from_payload(body)
            progress = await asyncio.to_thread(deposit_listener.on_transfer, event)
    except LedgerError as e:
        return JSONResponse(
            status_code=ERROR_STATUS_CODES.get(e.code, 400),
            content={"accepted": False, "error": e.code, "message": str(e)},
        )

    if progress is None:
        return {"accepted": False, "reason": "not_monitored"}
    return {
        "accepted": True,
        "tx_hash": progress.tx_hash,
        "status": progress.status,
        "confirmations": progress.confirmations,
        "credited": progress.credited,
    }
