import asyncio
import contextlib
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from shared.errors import ClientInputError, NegotiationError

from ..constants import REFERENCE_HEIGHT, REFERENCE_WIDTH
from ..domains.session import SessionNegotiator
from ..settings import ServerSettings
from .schemas import ConfigResponse, SessionDescription

logger = logging.getLogger("droidlink.api")

router = APIRouter()

SETTINGS = ServerSettings()
NEGOTIATOR = SessionNegotiator.from_settings(SETTINGS)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

_OTHER_METHODS = ["GET", "PUT", "PATCH", "DELETE", "HEAD"]


def get_negotiator() -> SessionNegotiator:
    return NEGOTIATOR


async def shutdown_event() -> None:
    with contextlib.suppress(Exception):
        await asyncio.wait_for(NEGOTIATOR.shutdown(), timeout=5)


def _parse_offer(body: bytes) -> SessionDescription:
    try:
        payload = json.loads(body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ClientInputError("invalid json: {}".format(exc)) from exc
    if not isinstance(payload, dict):
        raise ClientInputError("offer must be a json object")
    try:
        return SessionDescription.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) or "body"
            for error in exc.errors()
        )
        raise ClientInputError("invalid offer: {}".format(fields)) from exc


@router.options("/offer")
def offer_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post("/offer")
async def offer(
    request: Request, negotiator: SessionNegotiator = Depends(get_negotiator)
):
    body = await request.body()
    try:
        description = _parse_offer(body)
        answer = await negotiator.handle_offer(description)
    except ClientInputError as exc:
        logger.warning("rejected offer: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc), headers=CORS_HEADERS)
    except NegotiationError as exc:
        logger.error("negotiation failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc), headers=CORS_HEADERS)
    logger.info("answer sent, sdp %d bytes", len(answer.sdp))
    return JSONResponse(
        {"sdp": answer.sdp, "type": answer.type}, headers=CORS_HEADERS
    )


@router.api_route("/offer", methods=_OTHER_METHODS)
def offer_method_not_allowed():
    headers = dict(CORS_HEADERS)
    headers["Allow"] = "POST, OPTIONS"
    raise HTTPException(status_code=405, detail="method not allowed", headers=headers)


@router.get("/config", response_model=ConfigResponse)
def config(
    response: Response, negotiator: SessionNegotiator = Depends(get_negotiator)
):
    response.headers["Access-Control-Allow-Origin"] = "*"
    return {
        "ice_servers": negotiator.ice_urls,
        "reference_width": REFERENCE_WIDTH,
        "reference_height": REFERENCE_HEIGHT,
        "capture_source": negotiator.capture_command.name,
    }


@router.api_route("/config", methods=["POST", "PUT", "PATCH", "DELETE"])
def config_method_not_allowed():
    raise HTTPException(
        status_code=405, detail="method not allowed", headers={"Allow": "GET"}
    )
