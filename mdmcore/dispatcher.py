"""
Acknowledgment dispatcher.

Interprets a device's answer to a previously delivered command, reconciles
the reported data into the device and inventory stores, drains the command
from the queue, and enqueues DeviceConfigured when a device that is awaiting
configuration runs out of commands.

The dispatcher holds references to the stores and nothing else. Per-device
serialization is the stores' job, so any number of dispatchers may serve the
same stores.

Command lifecycle:
    queued      created, possibly delivered any number of times
    resolved    removed by acknowledge or fail_command

A reconciliation failure leaves the command queued. The device receives it
again on its next poll, which is the only retry mechanism.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Tuple

from .commands import CommandService
from .errors import AmbiguousIdentity, CommandNotFound, DeviceNotFound, MDMError, OrphanResponse
from .models import (
    Certificate,
    CommandRequest,
    DeviceApplication,
    QueryResponses,
    RequestType,
    Response,
)
from .stores import ApplicationStore, CertificateStore, DeviceStore

logger = logging.getLogger("dispatcher")

STAGE_DEVICE_INFORMATION = "device_information"
STAGE_APPLICATIONS = "installed_application_list"
STAGE_CERTIFICATES = "certificate_list"
STAGE_QUEUE = "command_queue"
STAGE_REQUEUE = "requeue"


@contextmanager
def _stage(name: str) -> Iterator[None]:
    """Tag engine errors with the stage they were raised in."""
    try:
        yield
    except MDMError as exc:
        if exc.stage is None:
            exc.stage = name
        raise


class Dispatcher:
    def __init__(
        self,
        devices: DeviceStore,
        apps: ApplicationStore,
        certs: CertificateStore,
        commands: CommandService,
    ) -> None:
        self.devices = devices
        self.apps = apps
        self.certs = certs
        self.commands = commands
        self._reconcilers: Dict[str, Tuple[str, Callable[[Response], None]]] = {
            RequestType.DEVICE_INFORMATION.value: (STAGE_DEVICE_INFORMATION, self._ack_query_responses),
            RequestType.INSTALLED_APPLICATION_LIST.value: (
                STAGE_APPLICATIONS,
                self._ack_installed_application_list,
            ),
            RequestType.CERTIFICATE_LIST.value: (STAGE_CERTIFICATES, self._ack_certificate_list),
        }

    # ── Exposed operations ─────────────────────────────────────────────

    def acknowledge(self, response: Response) -> int:
        """
        Reconcile an acknowledged response and drain its command.

        Returns the number of commands still queued for the device, counting
        a DeviceConfigured command enqueued by this call.
        """
        udid, cid = response.udid, response.command_uuid

        request_type = self._request_type(cid)
        reconciler = self._reconcilers.get(request_type) if request_type else None
        if reconciler is None:
            # Unhandled MDM client response, accepted to drain the queue.
            logger.info(f"ACK | udid={udid} command={cid} type={request_type} reconcile=none")
        else:
            stage, reconcile = reconciler
            try:
                with _stage(stage):
                    reconcile(response)
            except MDMError as exc:
                logger.warning(f"ACK | FAILED udid={udid} command={cid} error={exc}")
                raise
            logger.info(f"ACK | udid={udid} command={cid} type={request_type} reconciled")

        with _stage(STAGE_QUEUE):
            remaining = self.commands.delete_command(udid, cid)
        if remaining == 0:
            with _stage(STAGE_REQUEUE):
                remaining = self._check_requeue(udid)
        logger.info(f"ACK | udid={udid} command={cid} remaining={remaining}")
        return remaining

    def next_command(self, udid: str) -> Tuple[bytes, int]:
        """Peek the head of the device queue. Never mutates the queue."""
        with _stage(STAGE_QUEUE):
            body, remaining = self.commands.next_command(udid)
        logger.info(f"NEXT | udid={udid} deliver={bool(body)} remaining={remaining}")
        return body, remaining

    def fail_command(self, udid: str, command_uuid: str) -> int:
        """
        Remove a command the device rejected.

        Unlike acknowledge, this never enqueues DeviceConfigured, even when it
        empties the queue of a device awaiting configuration.
        """
        with _stage(STAGE_QUEUE):
            remaining = self.commands.delete_command(udid, command_uuid)
        logger.warning(f"FAIL | udid={udid} command={command_uuid} remaining={remaining}")
        return remaining

    # ── Internals ──────────────────────────────────────────────────────

    def _request_type(self, command_uuid: str) -> Optional[str]:
        with _stage(STAGE_QUEUE):
            try:
                return self.commands.find(command_uuid).request_type
            except CommandNotFound:
                logger.warning(f"ACK | command={command_uuid} type=None reconcile=none")
                return None

    def _check_requeue(self, udid: str) -> int:
        try:
            device = self.devices.get_by_udid(udid)
        except DeviceNotFound:
            logger.warning(f"REQUEUE | udid={udid} enrolled=false skipped")
            return 0
        if not device.awaiting_configuration:
            return 0

        request = CommandRequest(udid=udid, request_type=RequestType.DEVICE_CONFIGURED.value)
        command, remaining = self.commands.new_command_if_empty(request)
        if command is not None:
            logger.info(f"REQUEUE | udid={udid} queued=DeviceConfigured id={command.uuid}")
        return remaining

    def _ack_query_responses(self, response: Response) -> None:
        """Overwrite device attributes from a DeviceInformation answer."""
        query = response.query_responses or QueryResponses()
        matches = self.devices.devices(serial_number=query.serial_number, udid=response.udid)

        if not matches:
            raise OrphanResponse("no enrolled device matches the one responding")
        if len(matches) > 1:
            raise AmbiguousIdentity(
                f"expected a single device for udid: {response.udid}, "
                f"serial number: {query.serial_number}, but got {len(matches)}"
            )

        existing = matches[0]
        if existing.udid != response.udid:
            # matched by serial alone; the responding udid is not enrolled
            raise OrphanResponse(
                f"serial number {query.serial_number} belongs to {existing.udid}, "
                f"not to responding udid {response.udid}"
            )

        existing.last_checkin = datetime.now(timezone.utc)
        existing.last_query_response = query.model_dump_json(by_alias=True, exclude_none=True).encode()
        existing.product_name = query.product_name
        existing.build_version = query.build_version
        existing.device_name = query.device_name
        existing.imei = query.imei
        existing.meid = query.meid
        existing.model = query.model
        existing.os_version = query.os_version
        existing.serial_number = query.serial_number

        self.devices.save_query_responses(existing)

    def _ack_installed_application_list(self, response: Response) -> None:
        """Replace the device's application snapshot with the reported list."""
        device = self.devices.get_by_udid(response.udid)
        apps = [
            DeviceApplication(
                device_uuid=device.uuid,
                name=app.name,
                identifier=app.identifier,
                short_version=app.short_version,
                version=app.version,
                bundle_size=app.bundle_size,
                dynamic_size=app.dynamic_size,
            )
            for app in response.installed_application_list or []
        ]
        self.apps.replace_device_applications(device.uuid, apps)

    def _ack_certificate_list(self, response: Response) -> None:
        """Replace the device's certificate snapshot with the reported list."""
        device = self.devices.get_by_udid(response.udid)
        certs = [
            Certificate(
                device_uuid=device.uuid,
                common_name=cert.common_name,
                is_identity=cert.is_identity,
                data=cert.data,
            )
            for cert in response.certificate_list or []
        ]
        self.certs.replace_certificates_by_device_uuid(device.uuid, certs)
