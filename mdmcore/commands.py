"""
Command service.

Turns a CommandRequest into a queued command: assigns the command uuid,
renders the body the device will receive, and appends it to the store.
The body is JSON here; a plist transport re-encodes CommandPayload.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple
from uuid import uuid4

from .models import Command, CommandPayload, CommandRequest
from .stores import CommandStore

logger = logging.getLogger("commands")


def render_payload(command_uuid: str, request: CommandRequest) -> CommandPayload:
    return CommandPayload(
        command_uuid=command_uuid,
        command={"RequestType": request.request_type, **request.params},
    )


class CommandService:
    def __init__(self, store: CommandStore) -> None:
        self.store = store

    def new_command(self, request: CommandRequest) -> Command:
        """Append a command to the tail of the device queue."""
        cid = str(uuid4())
        body = render_payload(cid, request).model_dump_json(by_alias=True).encode()
        self.store.create(request.udid, request.request_type, body, command_uuid=cid)
        logger.info(f"COMMAND | udid={request.udid} queued={request.request_type} id={cid}")
        return Command(uuid=cid, udid=request.udid, request_type=request.request_type, body=body)

    def new_command_if_empty(self, request: CommandRequest) -> Tuple[Optional[Command], int]:
        """
        Append a command only if the device queue is empty.

        Returns the command (None when the queue already had entries) and the
        remaining count after the call.
        """
        cid = str(uuid4())
        body = render_payload(cid, request).model_dump_json(by_alias=True).encode()
        created, remaining = self.store.create_if_empty(
            request.udid, request.request_type, body, command_uuid=cid
        )
        if created is None:
            logger.info(
                f"COMMAND | udid={request.udid} skipped={request.request_type} remaining={remaining}"
            )
            return None, remaining
        logger.info(f"COMMAND | udid={request.udid} queued={request.request_type} id={cid}")
        command = Command(uuid=cid, udid=request.udid, request_type=request.request_type, body=body)
        return command, remaining

    def next_command(self, udid: str) -> Tuple[bytes, int]:
        return self.store.next(udid)

    def delete_command(self, udid: str, command_uuid: str) -> int:
        return self.store.remove(udid, command_uuid)

    def find(self, command_uuid: str) -> Command:
        return self.store.find(command_uuid)

    def pending(self, udid: str) -> List[Command]:
        return self.store.pending(udid)
