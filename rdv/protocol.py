"""
Wire protocol — envelope types, JSON serialization, and validation.

Every UDP datagram carries exactly one UTF-8 JSON object, at most
RDV_MAX_DATAGRAM (1024) bytes long.

Control envelopes (peer <-> rendezvous):
    Registration          {"req_type": "registration", "addr": "127.0.0.1:6000"}
    RegistrationResponse  {"status": "OK", "uuid": "<uuid>"}
    LookupRequest         {"req_type": "query", "queried_uuid": "<uuid>"}
    LookupResponse        {"address": "127.0.0.1:6000" | "nil", "uuid": "<uuid>"}

Any control envelope may also carry ``req_id``, a correlation token the
rendezvous server echoes back unchanged in its response.

Message envelopes (peer -> peer):
    {"src_uuid": "<uuid>", "dst_uuid": "<uuid>", "data": "...",
     "creation_time": "<ISO-8601 timestamp>"}

Decoding raises only DecodeError subclasses, whatever the input bytes.
"""

from __future__ import annotations

import ipaddress
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, NamedTuple, Union
from uuid import UUID

from rdv import RDV_MAX_DATAGRAM

# Request types
REQ_REGISTRATION = "registration"
REQ_QUERY = "query"

STATUS_OK = "OK"

# Reserved "no address on record" value in a LookupResponse
NOT_FOUND = "nil"

# The unregistered identifier; never minted by the rendezvous server
NIL_UUID = UUID(int=0)

MAX_REQ_ID_LENGTH = 64


class ProtocolError(Exception):
    """Invalid envelope or serialization failure."""


class EncodeError(ProtocolError):
    """Envelope cannot be put on the wire."""


class DecodeError(ProtocolError):
    """Inbound datagram is not a valid envelope."""


class MalformedEnvelope(DecodeError):
    """Datagram is not a JSON object of a recognized shape."""


class MissingField(DecodeError):
    """A required envelope field is absent."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing required field: {name!r}")
        self.field = name


class InvalidField(DecodeError):
    """A field is present but its value does not parse."""

    def __init__(self, name: str, cause: str) -> None:
        super().__init__(f"Invalid field {name!r}: {cause}")
        self.field = name
        self.cause = cause


class Address(NamedTuple):
    """IP address + UDP port.

    A plain tuple underneath, so it can be handed straight to
    ``DatagramTransport.sendto``. Textual form is ``host:port``, with IPv6
    hosts bracketed: ``[::1]:6000``.
    """

    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse the textual form. Raises ValueError."""
        if not isinstance(text, str):
            raise ValueError(f"address must be a string, got {type(text).__name__}")
        host, sep, port_text = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"expected host:port, got {text!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        elif ":" in host:
            raise ValueError(f"IPv6 host must be bracketed, got {text!r}")
        ip = ipaddress.ip_address(host)
        if not (port_text.isascii() and port_text.isdigit()):
            raise ValueError(f"port must be decimal digits, got {port_text!r}")
        port = int(port_text)
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        return cls(str(ip), port)

    @classmethod
    def from_sockaddr(cls, sockaddr: tuple) -> Address:
        """Build from a socket address (IPv6 sockaddrs are 4-tuples)."""
        return cls(sockaddr[0], int(sockaddr[1]))

    @property
    def is_unspecified(self) -> bool:
        try:
            return ipaddress.ip_address(self.host).is_unspecified
        except ValueError:
            return False


def new_req_id() -> str:
    """Random correlation token for a control request."""
    return os.urandom(8).hex()


def _with_req_id(obj: dict[str, Any], req_id: str | None) -> dict[str, Any]:
    if req_id is not None:
        obj["req_id"] = req_id
    return obj


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Registration:
    """Peer -> rendezvous: record ``addr`` and mint an identifier for it."""

    addr: Address
    req_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _with_req_id(
            {"req_type": REQ_REGISTRATION, "addr": str(self.addr)}, self.req_id,
        )


@dataclass(frozen=True)
class RegistrationResponse:
    """Rendezvous -> peer: registration outcome and the assigned identifier."""

    status: str
    uuid: UUID | None
    req_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK and self.uuid is not None

    def to_dict(self) -> dict[str, Any]:
        return _with_req_id({
            "status": self.status,
            "uuid": str(self.uuid) if self.uuid is not None else NOT_FOUND,
        }, self.req_id)


@dataclass(frozen=True)
class LookupRequest:
    """Peer -> rendezvous: where is ``queried_uuid``?"""

    queried_uuid: UUID
    req_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _with_req_id(
            {"req_type": REQ_QUERY, "queried_uuid": str(self.queried_uuid)},
            self.req_id,
        )


@dataclass(frozen=True)
class LookupResponse:
    """Rendezvous -> peer: ``address`` is None when no peer is on record."""

    uuid: UUID
    address: Address | None
    req_id: str | None = None

    @property
    def found(self) -> bool:
        return self.address is not None

    def to_dict(self) -> dict[str, Any]:
        return _with_req_id({
            "address": str(self.address) if self.address is not None else NOT_FOUND,
            "uuid": str(self.uuid),
        }, self.req_id)


@dataclass(frozen=True)
class MessageEnvelope:
    """Peer -> peer payload. ``src == dst`` is allowed."""

    src: UUID
    dst: UUID
    data: str
    creation_time: datetime

    @classmethod
    def create(cls, src: UUID, dst: UUID, data: str) -> MessageEnvelope:
        """Stamp a new message with the current UTC time."""
        if not isinstance(data, str):
            raise EncodeError(f"data must be a string, got {type(data).__name__}")
        for name, value in (("src", src), ("dst", dst)):
            if not isinstance(value, UUID) or value == NIL_UUID:
                raise EncodeError(f"{name} must be a registered identifier, got {value!r}")
        return cls(src, dst, data, datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "src_uuid": str(self.src),
            "dst_uuid": str(self.dst),
            "data": self.data,
            "creation_time": self.creation_time.isoformat(),
        }


ControlRequest = Union[Registration, LookupRequest]
ControlResponse = Union[RegistrationResponse, LookupResponse]
Envelope = Union[Registration, RegistrationResponse, LookupRequest, LookupResponse, MessageEnvelope]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to a single datagram payload.

    Raises EncodeError if the result would exceed RDV_MAX_DATAGRAM bytes.
    """
    to_dict = getattr(envelope, "to_dict", None)
    if to_dict is None:
        raise EncodeError(f"Not an envelope: {type(envelope).__name__}")
    try:
        data = json.dumps(to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError as e:
        raise EncodeError(f"Envelope is not valid UTF-8: {e}") from e
    if len(data) > RDV_MAX_DATAGRAM:
        raise EncodeError(
            f"Envelope too large: {len(data)} bytes (max {RDV_MAX_DATAGRAM})"
        )
    return data


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _loads(data: bytes) -> dict[str, Any]:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedEnvelope(f"Datagram must be bytes, got {type(data).__name__}")
    if len(data) > RDV_MAX_DATAGRAM:
        raise MalformedEnvelope(
            f"Datagram too large: {len(data)} bytes (max {RDV_MAX_DATAGRAM})"
        )
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError
        raise MalformedEnvelope(f"Invalid JSON payload: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedEnvelope("Envelope must be a JSON object")
    return obj


def _require(obj: dict[str, Any], name: str) -> Any:
    if name not in obj:
        raise MissingField(name)
    return obj[name]


def _str_field(obj: dict[str, Any], name: str) -> str:
    value = _require(obj, name)
    if not isinstance(value, str):
        raise InvalidField(name, f"expected string, got {type(value).__name__}")
    return value


def _uuid_field(obj: dict[str, Any], name: str, *, allow_nil: bool = True) -> UUID:
    text = _str_field(obj, name)
    try:
        value = UUID(text)
    except ValueError as e:
        raise InvalidField(name, str(e)) from e
    if not allow_nil and value == NIL_UUID:
        raise InvalidField(name, "nil identifier")
    return value


def _address_field(obj: dict[str, Any], name: str) -> Address:
    text = _str_field(obj, name)
    try:
        return Address.parse(text)
    except ValueError as e:
        raise InvalidField(name, str(e)) from e


def _time_field(obj: dict[str, Any], name: str) -> datetime:
    text = _str_field(obj, name)
    try:
        value = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidField(name, str(e)) from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _req_id_field(obj: dict[str, Any]) -> str | None:
    if "req_id" not in obj:
        return None
    value = obj["req_id"]
    if not isinstance(value, str) or not 0 < len(value) <= MAX_REQ_ID_LENGTH:
        raise InvalidField("req_id", f"expected 1-{MAX_REQ_ID_LENGTH} char string")
    return value


def _request_from_dict(obj: dict[str, Any]) -> ControlRequest:
    req_type = _str_field(obj, "req_type")
    req_id = _req_id_field(obj)
    if req_type == REQ_REGISTRATION:
        return Registration(_address_field(obj, "addr"), req_id)
    if req_type == REQ_QUERY:
        return LookupRequest(_uuid_field(obj, "queried_uuid"), req_id)
    raise InvalidField("req_type", f"unknown request type {req_type!r}")


def _registration_response_from_dict(obj: dict[str, Any]) -> RegistrationResponse:
    status = _str_field(obj, "status")
    req_id = _req_id_field(obj)
    if status == STATUS_OK:
        return RegistrationResponse(status, _uuid_field(obj, "uuid", allow_nil=False), req_id)
    # Error responses may omit the identifier or send the sentinel
    if obj.get("uuid", NOT_FOUND) == NOT_FOUND:
        return RegistrationResponse(status, None, req_id)
    return RegistrationResponse(status, _uuid_field(obj, "uuid"), req_id)


def _lookup_response_from_dict(obj: dict[str, Any]) -> LookupResponse:
    address_text = _str_field(obj, "address")
    queried = _uuid_field(obj, "uuid")
    req_id = _req_id_field(obj)
    if address_text == NOT_FOUND:
        return LookupResponse(queried, None, req_id)
    return LookupResponse(queried, _address_field(obj, "address"), req_id)


def _message_from_dict(obj: dict[str, Any]) -> MessageEnvelope:
    return MessageEnvelope(
        src=_uuid_field(obj, "src_uuid", allow_nil=False),
        dst=_uuid_field(obj, "dst_uuid", allow_nil=False),
        data=_str_field(obj, "data"),
        creation_time=_time_field(obj, "creation_time"),
    )


def decode(data: bytes) -> Envelope:
    """Decode and classify any envelope.

    Classification is by shape: ``req_type`` marks a request, ``src_uuid`` /
    ``dst_uuid`` a peer message, ``status`` a registration response and
    ``address`` a lookup response.
    """
    obj = _loads(data)
    if "req_type" in obj:
        return _request_from_dict(obj)
    if "src_uuid" in obj or "dst_uuid" in obj:
        return _message_from_dict(obj)
    if "status" in obj:
        return _registration_response_from_dict(obj)
    if "address" in obj:
        return _lookup_response_from_dict(obj)
    raise MalformedEnvelope("Unrecognized envelope shape")


def decode_request(data: bytes) -> ControlRequest:
    """Decode a datagram that must be a control request (server side)."""
    obj = _loads(data)
    if "req_type" not in obj:
        raise MissingField("req_type")
    return _request_from_dict(obj)


def decode_response(data: bytes) -> ControlResponse:
    """Decode a datagram that must be a control response (client side)."""
    envelope = decode(data)
    if not isinstance(envelope, (RegistrationResponse, LookupResponse)):
        raise MalformedEnvelope(f"Expected a control response, got {type(envelope).__name__}")
    return envelope


def decode_message(data: bytes) -> MessageEnvelope:
    """Decode a datagram that must be a peer message (receive loop)."""
    return _message_from_dict(_loads(data))
