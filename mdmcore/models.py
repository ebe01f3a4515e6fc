"""
Data models for the command engine and the device-facing transport.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ──────────────────────────────────────────────────────────────

class RequestType(str, Enum):
    """Request types the engine reconciles or synthesizes."""

    DEVICE_INFORMATION = "DeviceInformation"
    INSTALLED_APPLICATION_LIST = "InstalledApplicationList"
    CERTIFICATE_LIST = "CertificateList"
    DEVICE_CONFIGURED = "DeviceConfigured"


class CheckinStatus(str, Enum):
    IDLE = "Idle"
    ACKNOWLEDGED = "Acknowledged"
    ERROR = "Error"
    COMMAND_FORMAT_ERROR = "CommandFormatError"
    NOT_NOW = "NotNow"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Durable records ────────────────────────────────────────────────────

class Device(BaseModel):
    """
    One enrolled device.

    udid is the protocol identity; uuid is the internal reference used by
    inventory rows. serial_number stays None until the first check-in that
    reports it.
    """

    udid: str
    uuid: str = Field(default_factory=lambda: str(uuid4()))
    serial_number: Optional[str] = None
    product_name: Optional[str] = None
    build_version: Optional[str] = None
    device_name: Optional[str] = None
    imei: Optional[str] = None
    meid: Optional[str] = None
    model: Optional[str] = None
    os_version: Optional[str] = None
    last_query_response: Optional[bytes] = None
    last_checkin: Optional[datetime] = None
    awaiting_configuration: bool = False


class Command(BaseModel):
    uuid: str
    udid: str
    request_type: str
    body: bytes = b""
    created_at: datetime = Field(default_factory=_utcnow)


class DeviceApplication(BaseModel):
    """One installed application as of the latest InstalledApplicationList."""

    device_uuid: str
    name: str
    identifier: Optional[str] = None
    short_version: Optional[str] = None
    version: Optional[str] = None
    bundle_size: Optional[int] = None
    dynamic_size: Optional[int] = None


class Certificate(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    device_uuid: str
    common_name: str
    is_identity: bool = False
    data: bytes = b""


# ── Device response payloads ───────────────────────────────────────────

def _decode_base64(value: Any) -> Any:
    # JSON carries binary as base64 text; python callers pass bytes.
    if isinstance(value, str):
        return base64.b64decode(value)
    return value


class QueryResponses(BaseModel):
    """DeviceInformation answers. Unknown query keys are kept for the snapshot."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    serial_number: Optional[str] = Field(default=None, alias="SerialNumber")
    product_name: Optional[str] = Field(default=None, alias="ProductName")
    build_version: Optional[str] = Field(default=None, alias="BuildVersion")
    device_name: Optional[str] = Field(default=None, alias="DeviceName")
    imei: Optional[str] = Field(default=None, alias="IMEI")
    meid: Optional[str] = Field(default=None, alias="MEID")
    model: Optional[str] = Field(default=None, alias="Model")
    os_version: Optional[str] = Field(default=None, alias="OSVersion")


class InstalledApplication(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", alias="Name")
    identifier: Optional[str] = Field(default=None, alias="Identifier")
    short_version: Optional[str] = Field(default=None, alias="ShortVersion")
    version: Optional[str] = Field(default=None, alias="Version")
    bundle_size: Optional[int] = Field(default=None, alias="BundleSize")
    dynamic_size: Optional[int] = Field(default=None, alias="DynamicSize")


class CertificateListItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    common_name: str = Field(default="", alias="CommonName")
    is_identity: bool = Field(default=False, alias="IsIdentity")
    data: bytes = Field(default=b"", alias="Data")

    @field_validator("data", mode="before")
    @classmethod
    def decode_data(cls, value: Any) -> Any:
        return _decode_base64(value)


class ErrorChainItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    error_code: Optional[int] = Field(default=None, alias="ErrorCode")
    error_domain: Optional[str] = Field(default=None, alias="ErrorDomain")
    localized_description: Optional[str] = Field(default=None, alias="LocalizedDescription")


class Response(BaseModel):
    """
    A decoded device message on the connect endpoint.

    Only one of the payload sections is present, depending on what the
    device is reporting. Devices do not always echo the RequestType, so the
    command uuid is the only reliable way to classify the payload.
    """

    model_config = ConfigDict(populate_by_name=True)

    udid: str = Field(..., min_length=1, alias="UDID")
    command_uuid: str = Field(default="", alias="CommandUUID")
    status: CheckinStatus = Field(default=CheckinStatus.IDLE, alias="Status")
    request_type: Optional[str] = Field(default=None, alias="RequestType")
    query_responses: Optional[QueryResponses] = Field(default=None, alias="QueryResponses")
    installed_application_list: Optional[list[InstalledApplication]] = Field(
        default=None, alias="InstalledApplicationList"
    )
    certificate_list: Optional[list[CertificateListItem]] = Field(
        default=None, alias="CertificateList"
    )
    error_chain: Optional[list[ErrorChainItem]] = Field(default=None, alias="ErrorChain")


# ── Request / Response schemas ─────────────────────────────────────────

class CommandRequest(BaseModel):
    udid: str = Field(..., min_length=1)
    request_type: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class CommandPayload(BaseModel):
    """The body delivered to the device for one command."""

    model_config = ConfigDict(populate_by_name=True)

    command_uuid: str = Field(..., alias="CommandUUID")
    command: dict[str, Any] = Field(..., alias="Command")


class CommandResponse(BaseModel):
    command_uuid: str
    udid: str
    request_type: str
    payload: dict[str, Any]
