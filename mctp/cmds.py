"""MCTP control message definitions, encoders and classifiers."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Iterable

from mctp.packet import MctpError

CTRL_HDR_SIZE = 3

MCTP_CTRL_HDR_MSG_TYPE = 0
MCTP_CTRL_HDR_FLAG_REQUEST = 1 << 7
MCTP_CTRL_HDR_FLAG_DGRAM = 1 << 6
MCTP_CTRL_HDR_INSTANCE_ID_MASK = 0x1F

# Control command codes
MCTP_CTRL_CMD_RESERVED = 0x00
MCTP_CTRL_CMD_SET_ENDPOINT_ID = 0x01
MCTP_CTRL_CMD_GET_ENDPOINT_ID = 0x02
MCTP_CTRL_CMD_GET_ENDPOINT_UUID = 0x03
MCTP_CTRL_CMD_GET_VERSION_SUPPORT = 0x04
MCTP_CTRL_CMD_GET_MESSAGE_TYPE_SUPPORT = 0x05
MCTP_CTRL_CMD_GET_VENDOR_MESSAGE_SUPPORT = 0x06
MCTP_CTRL_CMD_RESOLVE_ENDPOINT_ID = 0x07
MCTP_CTRL_CMD_ALLOCATE_ENDPOINT_IDS = 0x08
MCTP_CTRL_CMD_ROUTING_INFO_UPDATE = 0x09
MCTP_CTRL_CMD_GET_ROUTING_TABLE_ENTRIES = 0x0A
MCTP_CTRL_CMD_PREPARE_ENDPOINT_DISCOVERY = 0x0B
MCTP_CTRL_CMD_ENDPOINT_DISCOVERY = 0x0C
MCTP_CTRL_CMD_DISCOVERY_NOTIFY = 0x0D
MCTP_CTRL_CMD_GET_NETWORK_ID = 0x0E
MCTP_CTRL_CMD_QUERY_HOP = 0x0F
MCTP_CTRL_CMD_RESOLVE_UUID = 0x10
MCTP_CTRL_CMD_QUERY_RATE_LIMIT = 0x11
MCTP_CTRL_CMD_REQUEST_TX_RATE_LIMIT = 0x12
MCTP_CTRL_CMD_UPDATE_RATE_LIMIT = 0x13
MCTP_CTRL_CMD_QUERY_SUPPORTED_INTERFACES = 0x14
MCTP_CTRL_CMD_MAX = 0x15
MCTP_CTRL_CMD_FIRST_TRANSPORT = 0xF0
MCTP_CTRL_CMD_LAST_TRANSPORT = 0xFF

# Completion codes
MCTP_CTRL_CC_SUCCESS = 0x00
MCTP_CTRL_CC_ERROR = 0x01
MCTP_CTRL_CC_ERROR_INVALID_DATA = 0x02
MCTP_CTRL_CC_ERROR_INVALID_LENGTH = 0x03
MCTP_CTRL_CC_ERROR_NOT_READY = 0x04
MCTP_CTRL_CC_ERROR_UNSUPPORTED_CMD = 0x05
MCTP_CTRL_CC_GET_MCTP_VER_SUPPORT_UNSUPPORTED_TYPE = 0x80

# Set Endpoint ID response status field
MCTP_EID_ASSIGNMENT_STATUS_SHIFT = 0x4
MCTP_EID_ASSIGNMENT_STATUS_MASK = 0x3
MCTP_SET_EID_ACCEPTED = 0x0
MCTP_SET_EID_REJECTED = 0x1

# Physical transport binding identifiers
MCTP_BINDING_RESERVED = 0x00
MCTP_BINDING_SMBUS = 0x01
MCTP_BINDING_PCIE = 0x02
MCTP_BINDING_USB = 0x03
MCTP_BINDING_KCS = 0x04
MCTP_BINDING_SERIAL = 0x05
MCTP_BINDING_VENDOR = 0x06

MCTP_GET_VDM_SUPPORT_PCIE_FORMAT_ID = 0x00
MCTP_GET_VDM_SUPPORT_IANA_FORMAT_ID = 0x01
MCTP_GET_VDM_SUPPORT_NO_MORE_CAP_SET = 0xFF

# Get Endpoint ID response eid_type field
MCTP_ENDPOINT_TYPE_SHIFT = 4
MCTP_ENDPOINT_TYPE_MASK = 0x3
MCTP_SIMPLE_ENDPOINT = 0
MCTP_BUS_OWNER_BRIDGE = 1
MCTP_ENDPOINT_ID_TYPE_SHIFT = 0
MCTP_ENDPOINT_ID_TYPE_MASK = 0x3
MCTP_DYNAMIC_EID = 0
MCTP_STATIC_EID = 1

# Routing table entry type field
MCTP_ROUTING_ENTRY_PORT_SHIFT = 0
MCTP_ROUTING_ENTRY_PORT_MASK = 0x1F
MCTP_ROUTING_ENTRY_ASSIGNMENT_TYPE_SHIFT = 5
MCTP_ROUTING_ENTRY_ASSIGNMENT_TYPE_MASK = 0x1
MCTP_DYNAMIC_ASSIGNMENT = 0
MCTP_STATIC_ASSIGNMENT = 1
MCTP_ROUTING_ENTRY_TYPE_SHIFT = 6
MCTP_ROUTING_ENTRY_TYPE_MASK = 0x3
MCTP_ROUTING_ENTRY_ENDPOINT = 0x00
MCTP_ROUTING_ENTRY_BRIDGE_AND_ENDPOINTS = 0x01
MCTP_ROUTING_ENTRY_BRIDGE = 0x02
MCTP_ROUTING_ENTRY_ENDPOINTS = 0x03

MCTP_GET_VERSION_SUPPORT_BASE_INFO = 0xFF

MAX_PHYSICAL_ADDRESS_SIZE = 8
GUID_SIZE = 16


class SetEidOp(enum.IntEnum):
    SET_EID = 0
    FORCE_EID = 1
    RESET_EID = 2
    SET_DISCOVERED_FLAG = 3


class AllocateEidsOp(enum.IntEnum):
    ALLOCATE_EIDS = 0
    FORCE_ALLOCATION = 1
    GET_ALLOCATION_INFO = 2
    RESERVED = 3


def _u8(name: str, value: int) -> int:
    if not 0 <= int(value) <= 0xFF:
        raise ValueError(f"{name} out of byte range: {value}")
    return int(value)


def _require(data: bytes, size: int, what: str) -> bytes:
    data = bytes(data)
    if len(data) < size:
        raise MctpError(f"{what} needs {size} bytes, got {len(data)}")
    return data


@dataclass
class CtrlMsgHdr:
    """The three-byte header that starts every control message."""

    ic_msg_type: int = MCTP_CTRL_HDR_MSG_TYPE
    rq_dgram_inst: int = 0
    command_code: int = MCTP_CTRL_CMD_RESERVED

    def __post_init__(self) -> None:
        _u8("ic_msg_type", self.ic_msg_type)
        _u8("rq_dgram_inst", self.rq_dgram_inst)
        _u8("command_code", self.command_code)

    @property
    def is_request(self) -> bool:
        return bool(self.rq_dgram_inst & MCTP_CTRL_HDR_FLAG_REQUEST)

    @property
    def instance_id(self) -> int:
        return self.rq_dgram_inst & MCTP_CTRL_HDR_INSTANCE_ID_MASK

    def pack(self) -> bytes:
        return bytes((self.ic_msg_type, self.rq_dgram_inst, self.command_code))

    @classmethod
    def from_bytes(cls, data: bytes) -> "CtrlMsgHdr":
        raw = _require(data, CTRL_HDR_SIZE, "control header")
        return cls(raw[0], raw[1], raw[2])


@dataclass
class RoutingTableEntry:
    """A routing table entry together with its physical address."""

    eid_range_size: int = 0
    starting_eid: int = 0
    entry_type: int = 0
    phys_transport_binding_id: int = 0
    phys_media_type_id: int = 0
    phys_address: bytes = b""

    def __post_init__(self) -> None:
        for name in (
            "eid_range_size",
            "starting_eid",
            "entry_type",
            "phys_transport_binding_id",
            "phys_media_type_id",
        ):
            _u8(name, getattr(self, name))
        self.phys_address = bytes(self.phys_address)
        if len(self.phys_address) > MAX_PHYSICAL_ADDRESS_SIZE:
            raise ValueError(
                f"physical address longer than {MAX_PHYSICAL_ADDRESS_SIZE} bytes"
            )

    @property
    def phys_address_size(self) -> int:
        return len(self.phys_address)

    @property
    def port(self) -> int:
        return (
            self.entry_type >> MCTP_ROUTING_ENTRY_PORT_SHIFT
        ) & MCTP_ROUTING_ENTRY_PORT_MASK

    @property
    def assignment_type(self) -> int:
        return (
            self.entry_type >> MCTP_ROUTING_ENTRY_ASSIGNMENT_TYPE_SHIFT
        ) & MCTP_ROUTING_ENTRY_ASSIGNMENT_TYPE_MASK

    @property
    def routing_type(self) -> int:
        return (
            self.entry_type >> MCTP_ROUTING_ENTRY_TYPE_SHIFT
        ) & MCTP_ROUTING_ENTRY_TYPE_MASK

    def pack(self) -> bytes:
        """Wire form: six fixed bytes followed by the physical address."""
        return (
            bytes(
                (
                    self.eid_range_size,
                    self.starting_eid,
                    self.entry_type,
                    self.phys_transport_binding_id,
                    self.phys_media_type_id,
                    self.phys_address_size,
                )
            )
            + self.phys_address
        )


@dataclass
class SetEidRequest:
    """A decoded Set Endpoint ID request."""

    ctrl_msg_hdr: CtrlMsgHdr
    operation: SetEidOp
    eid: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "SetEidRequest":
        raw = _require(data, CTRL_HDR_SIZE + 2, "Set Endpoint ID request")
        return cls(
            CtrlMsgHdr.from_bytes(raw),
            SetEidOp(raw[CTRL_HDR_SIZE] & 0x3),
            raw[CTRL_HDR_SIZE + 1],
        )


@dataclass
class SetEidResponse:
    completion_code: int = MCTP_CTRL_CC_SUCCESS
    status: int = 0
    eid_set: int = 0
    eid_pool_size: int = 0
    ctrl_hdr: CtrlMsgHdr = field(default_factory=CtrlMsgHdr)

    @property
    def assignment_status(self) -> int:
        return (
            self.status >> MCTP_EID_ASSIGNMENT_STATUS_SHIFT
        ) & MCTP_EID_ASSIGNMENT_STATUS_MASK

    def pack(self) -> bytes:
        return self.ctrl_hdr.pack() + bytes(
            (
                _u8("completion_code", self.completion_code),
                _u8("status", self.status),
                _u8("eid_set", self.eid_set),
                _u8("eid_pool_size", self.eid_pool_size),
            )
        )


@dataclass
class GetEidResponse:
    completion_code: int = MCTP_CTRL_CC_SUCCESS
    eid: int = 0
    eid_type: int = 0
    medium_data: int = 0
    ctrl_hdr: CtrlMsgHdr = field(default_factory=CtrlMsgHdr)

    @property
    def endpoint_type(self) -> int:
        return (self.eid_type >> MCTP_ENDPOINT_TYPE_SHIFT) & MCTP_ENDPOINT_TYPE_MASK

    @property
    def endpoint_id_type(self) -> int:
        return (
            self.eid_type >> MCTP_ENDPOINT_ID_TYPE_SHIFT
        ) & MCTP_ENDPOINT_ID_TYPE_MASK

    def pack(self) -> bytes:
        return self.ctrl_hdr.pack() + bytes(
            (
                _u8("completion_code", self.completion_code),
                _u8("eid", self.eid),
                _u8("eid_type", self.eid_type),
                _u8("medium_data", self.medium_data),
            )
        )


@dataclass
class GetUuidResponse:
    completion_code: int = MCTP_CTRL_CC_SUCCESS
    uuid: bytes = bytes(GUID_SIZE)
    ctrl_hdr: CtrlMsgHdr = field(default_factory=CtrlMsgHdr)

    def __post_init__(self) -> None:
        self.uuid = bytes(self.uuid)
        if len(self.uuid) != GUID_SIZE:
            raise ValueError(f"uuid must be {GUID_SIZE} bytes, got {len(self.uuid)}")

    def pack(self) -> bytes:
        return (
            self.ctrl_hdr.pack()
            + bytes((_u8("completion_code", self.completion_code),))
            + self.uuid
        )


@dataclass
class GetVdmSupportResponse:
    completion_code: int = MCTP_CTRL_CC_SUCCESS
    vendor_id_set_selector: int = 0
    vendor_id_format: int = MCTP_GET_VDM_SUPPORT_PCIE_FORMAT_ID
    vendor_id_data: int = 0
    ctrl_hdr: CtrlMsgHdr = field(default_factory=CtrlMsgHdr)

    def pack(self) -> bytes:
        """Fixed part of the response; the vendor id occupies a 4-byte slot."""
        if not 0 <= self.vendor_id_data <= 0xFFFFFFFF:
            raise ValueError(f"vendor_id_data out of range: {self.vendor_id_data}")
        return (
            self.ctrl_hdr.pack()
            + bytes(
                (
                    _u8("completion_code", self.completion_code),
                    _u8("vendor_id_set_selector", self.vendor_id_set_selector),
                    _u8("vendor_id_format", self.vendor_id_format),
                )
            )
            + struct.pack("<I", self.vendor_id_data)
        )


def _header(rq_dgram_inst: int, command_code: int) -> bytes:
    return CtrlMsgHdr(MCTP_CTRL_HDR_MSG_TYPE, rq_dgram_inst, command_code).pack()


def encode_set_eid(rq_dgram_inst: int, op: SetEidOp, eid: int) -> bytes:
    op = SetEidOp(op)
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_SET_ENDPOINT_ID) + bytes(
        (op & 0x3, _u8("eid", eid))
    )


def encode_get_eid(rq_dgram_inst: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_ENDPOINT_ID)


def encode_get_uuid(rq_dgram_inst: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_ENDPOINT_UUID)


def encode_get_ver_support(rq_dgram_inst: int, msg_type_number: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_VERSION_SUPPORT) + bytes(
        (_u8("msg_type_number", msg_type_number),)
    )


def encode_get_msg_type_support(rq_dgram_inst: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_MESSAGE_TYPE_SUPPORT)


def encode_get_vdm_support(rq_dgram_inst: int, v_id_set_selector: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_VENDOR_MESSAGE_SUPPORT) + bytes(
        (_u8("v_id_set_selector", v_id_set_selector),)
    )


def encode_discovery_notify(rq_dgram_inst: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_DISCOVERY_NOTIFY)


def encode_get_routing_table(rq_dgram_inst: int, entry_handle: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_GET_ROUTING_TABLE_ENTRIES) + bytes(
        (_u8("entry_handle", entry_handle),)
    )


def encode_allocate_eids(
    rq_dgram_inst: int, op: AllocateEidsOp, pool_size: int, eid: int
) -> bytes:
    op = AllocateEidsOp(op)
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_ALLOCATE_ENDPOINT_IDS) + bytes(
        (op & 0x3, _u8("pool_size", pool_size), _u8("eid", eid))
    )


def encode_routing_information_update(
    rq_dgram_inst: int, entries: Iterable[RoutingTableEntry]
) -> bytes:
    """Encode a Routing Information Update request; needs at least one entry."""
    entries = list(entries)
    if not entries:
        raise ValueError("routing information update needs at least one entry")
    count = _u8("number of entries", len(entries))
    body = b"".join(
        bytes((e.entry_type, e.eid_range_size, e.starting_eid)) + e.phys_address
        for e in entries
    )
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_ROUTING_INFO_UPDATE) + bytes(
        (count,)
    ) + body


def encode_rsp_get_routing_table(entries: Iterable[RoutingTableEntry]) -> bytes:
    """Encode a Get Routing Table Entries response holding every entry.

    The control header bytes are left zero for the caller to fill in.
    """
    entries = list(entries)
    count = _u8("number of entries", len(entries))
    fixed = bytes(CTRL_HDR_SIZE) + bytes((MCTP_CTRL_CC_SUCCESS, 0xFF, count))
    return fixed + b"".join(entry.pack() for entry in entries)


def encode_query_hop(rq_dgram_inst: int, eid: int, mctp_ctrl_msg_type: int) -> bytes:
    return _header(rq_dgram_inst, MCTP_CTRL_CMD_QUERY_HOP) + bytes(
        (_u8("eid", eid), _u8("mctp_ctrl_msg_type", mctp_ctrl_msg_type))
    )


def is_ctrl_msg(buf: bytes) -> bool:
    """True if ``buf`` is long enough for a control header and of control type."""
    return len(buf) >= CTRL_HDR_SIZE and buf[0] == MCTP_CTRL_HDR_MSG_TYPE


def ctrl_msg_is_request(buf: bytes) -> bool:
    """True if the control message in ``buf`` has the request flag set."""
    hdr = CtrlMsgHdr.from_bytes(buf)
    return hdr.ic_msg_type == MCTP_CTRL_HDR_MSG_TYPE and hdr.is_request


def ctrl_cmd_is_transport(buf: bytes) -> bool:
    """True if the command code lies in the transport-specific range."""
    hdr = CtrlMsgHdr.from_bytes(buf)
    return MCTP_CTRL_CMD_FIRST_TRANSPORT <= hdr.command_code <= MCTP_CTRL_CMD_LAST_TRANSPORT