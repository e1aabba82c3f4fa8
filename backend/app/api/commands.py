"""Commands API — list coil commands and trigger one (FC05) through the dispatcher."""

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from services.command_dispatcher import DispatchStatus

router = APIRouter(prefix="/api/commands", tags=["commands"])

logger = logging.getLogger("gateway.api.commands")

# Dispatch status -> HTTP status for rejected commands
_REJECT_CODES = {
    DispatchStatus.UNKNOWN: 404,
    DispatchStatus.DISABLED: 403,
    DispatchStatus.RETAINED: 409,
    DispatchStatus.COOLDOWN: 429,
    DispatchStatus.WRITE_FAILED: 502,
}


class CommandInfo(BaseModel):
    identifier: str
    coil: int
    enabled: bool
    description: str


class CommandResponse(BaseModel):
    success: bool
    status: str
    message: str
    identifier: str
    coil: int | None = None


def _get_dispatcher(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(503, "Command dispatcher not initialized")
    return dispatcher


@router.get("", response_model=list[CommandInfo])
async def list_commands(request: Request):
    dispatcher = _get_dispatcher(request)
    return [
        CommandInfo(
            identifier=c.identifier, coil=c.coil, enabled=c.enabled, description=c.description,
        )
        for c in dispatcher.commands.values()
    ]


@router.post("/{identifier}", response_model=CommandResponse)
async def send_command(identifier: str, request: Request):
    """Fire one coil command. Subject to the global command cooldown."""
    dispatcher = _get_dispatcher(request)
    logger.info("Command request via API: %s", identifier)

    result = await dispatcher.dispatch(identifier, retained=False)
    if not result.accepted:
        code = _REJECT_CODES.get(result.status, 400)
        headers = None
        if result.status == DispatchStatus.COOLDOWN:
            headers = {"Retry-After": str(max(1, int(result.retry_after + 0.999)))}
        raise HTTPException(code, f"{result.status.value}: {result.message}", headers=headers)

    return CommandResponse(
        success=True,
        status=result.status.value,
        message=result.message,
        identifier=result.identifier,
        coil=result.coil,
    )
