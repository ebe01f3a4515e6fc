"""
MDM command engine — device-facing and management endpoints

Endpoints:
    PUT  /mdm/connect                          — Device poll / acknowledgment / error report
    POST /mdm/commands                         — Queue a command for a device
    GET  /mdm/commands/{udid}                  — List queued commands in delivery order
    GET  /devices/{udid}                       — Reconciled device record
    GET  /devices/{udid}/applications          — Installed application snapshot
    GET  /devices/{udid}/certificates          — Installed certificate snapshot
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi import Response as HTTPResponse

from .commands import CommandService, render_payload
from .config import Settings, settings
from .dispatcher import Dispatcher
from .errors import (
    AmbiguousIdentity,
    CommandNotFound,
    DeviceNotFound,
    MDMError,
    OrphanResponse,
    StoreUnavailable,
)
from .models import CheckinStatus, CommandRequest, CommandResponse, Response
from .stores import (
    MemoryApplicationStore,
    MemoryCertificateStore,
    MemoryCommandStore,
    MemoryDeviceStore,
)

# ── Structured logging ─────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mdm-connect")

app = FastAPI(title="MDM Command Engine", version="0.1.0")


# ── Stores ─────────────────────────────────────────────────────────────

def build_stores(config: Settings):
    """Return (devices, apps, certs, commands) for the configured backend."""
    if config.store_backend == "sqlite":
        from .sqlite import (
            Database,
            SQLiteApplicationStore,
            SQLiteCertificateStore,
            SQLiteCommandStore,
            SQLiteDeviceStore,
        )

        db = Database(config.database_path)
        logger.info(f"STORES | backend=sqlite path={config.database_path}")
        return (
            SQLiteDeviceStore(db),
            SQLiteApplicationStore(db),
            SQLiteCertificateStore(db),
            SQLiteCommandStore(db, config.metadata_retention_seconds),
        )
    logger.info("STORES | backend=memory")
    return (
        MemoryDeviceStore(),
        MemoryApplicationStore(),
        MemoryCertificateStore(),
        MemoryCommandStore(config.metadata_retention_seconds),
    )


devices, apps, certs, command_store = build_stores(settings)
commands = CommandService(command_store)
dispatcher = Dispatcher(devices, apps, certs, commands)


def _http_error(exc: MDMError) -> HTTPException:
    """Map an engine error to the status the device or operator sees."""
    if isinstance(exc, (CommandNotFound, DeviceNotFound, OrphanResponse)):
        status = 404
    elif isinstance(exc, AmbiguousIdentity):
        status = 409
    elif isinstance(exc, StoreUnavailable):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(exc))


# ── Endpoints ──────────────────────────────────────────────────────────

@app.put("/mdm/connect")
def connect(response: Response):
    """
    Handle a device message on the connect channel.

    Acknowledged and Error reports resolve the referenced command first; then
    the next queued command is returned as the raw body. NotNow keeps the
    command queued and delivers nothing.
    """
    udid = response.udid
    logger.info(f"CONNECT | udid={udid} status={response.status.value} command={response.command_uuid}")

    try:
        if response.status == CheckinStatus.ACKNOWLEDGED:
            dispatcher.acknowledge(response)
        elif response.status in (CheckinStatus.ERROR, CheckinStatus.COMMAND_FORMAT_ERROR):
            if response.error_chain:
                for item in response.error_chain:
                    logger.warning(
                        f"CONNECT | udid={udid} command={response.command_uuid} "
                        f"error_code={item.error_code} domain={item.error_domain} "
                        f"description={item.localized_description}"
                    )
            dispatcher.fail_command(udid, response.command_uuid)
        elif response.status == CheckinStatus.NOT_NOW:
            remaining = len(commands.pending(udid))
            logger.info(f"CONNECT | udid={udid} NOT_NOW remaining={remaining}")
            return HTTPResponse(status_code=200, headers={"X-Remaining-Commands": str(remaining)})

        body, remaining = dispatcher.next_command(udid)
    except MDMError as exc:
        logger.error(f"CONNECT | udid={udid} REJECTED stage={exc.stage} error={exc}")
        raise _http_error(exc)

    return HTTPResponse(
        content=body,
        status_code=200,
        media_type="application/json" if body else None,
        headers={"X-Remaining-Commands": str(remaining)},
    )


@app.post("/mdm/commands", status_code=201, response_model=CommandResponse)
def new_command(request: CommandRequest):
    """Queue a command at the tail of the device's queue."""
    try:
        command = commands.new_command(request)
    except MDMError as exc:
        logger.error(f"COMMAND | udid={request.udid} REJECTED error={exc}")
        raise _http_error(exc)
    payload = render_payload(command.uuid, request).model_dump(by_alias=True)
    return CommandResponse(
        command_uuid=command.uuid,
        udid=command.udid,
        request_type=command.request_type,
        payload=payload,
    )


@app.get("/mdm/commands/{udid}")
def list_commands(udid: str):
    """Return queued commands for a device, head first."""
    try:
        pending = commands.pending(udid)
    except MDMError as exc:
        raise _http_error(exc)
    logger.info(f"COMMANDS | udid={udid} pending={len(pending)}")
    return {
        "udid": udid,
        "commands": [
            {"command_uuid": c.uuid, "request_type": c.request_type, "created_at": c.created_at}
            for c in pending
        ],
        "total": len(pending),
    }


@app.get("/devices/{udid}")
def get_device(udid: str):
    try:
        device = devices.get_by_udid(udid)
    except MDMError as exc:
        logger.warning(f"DEVICE | udid={udid} NOT_FOUND")
        raise _http_error(exc)
    return device.model_dump(mode="json", exclude={"last_query_response"})


@app.get("/devices/{udid}/applications")
def get_applications(udid: str):
    try:
        device = devices.get_by_udid(udid)
        rows = apps.device_applications(device.uuid)
    except MDMError as exc:
        raise _http_error(exc)
    logger.info(f"APPLICATIONS | udid={udid} total={len(rows)}")
    return {
        "udid": udid,
        "applications": [a.model_dump(mode="json", exclude={"device_uuid"}) for a in rows],
        "total": len(rows),
    }


@app.get("/devices/{udid}/certificates")
def get_certificates(udid: str):
    try:
        device = devices.get_by_udid(udid)
        rows = certs.device_certificates(device.uuid)
    except MDMError as exc:
        raise _http_error(exc)
    logger.info(f"CERTIFICATES | udid={udid} total={len(rows)}")
    return {
        "udid": udid,
        "certificates": [c.model_dump(mode="json", exclude={"device_uuid"}) for c in rows],
        "total": len(rows),
    }
