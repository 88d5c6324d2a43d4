"""Endpoint core: bus registration, packetisation, reassembly and control handling."""

from __future__ import annotations

import copy
import enum
import errno
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional

from mctp import log
from mctp.cmds import (
    GUID_SIZE,
    MCTP_BUS_OWNER_BRIDGE,
    MCTP_CTRL_CC_ERROR_INVALID_DATA,
    MCTP_CTRL_CC_SUCCESS,
    MCTP_EID_ASSIGNMENT_STATUS_MASK,
    MCTP_EID_ASSIGNMENT_STATUS_SHIFT,
    MCTP_ENDPOINT_ID_TYPE_MASK,
    MCTP_ENDPOINT_ID_TYPE_SHIFT,
    MCTP_ENDPOINT_TYPE_MASK,
    MCTP_ENDPOINT_TYPE_SHIFT,
    MCTP_SET_EID_ACCEPTED,
    MCTP_SET_EID_REJECTED,
    MCTP_STATIC_EID,
    GetEidResponse,
    GetUuidResponse,
    GetVdmSupportResponse,
    SetEidOp,
    SetEidRequest,
    SetEidResponse,
    ctrl_cmd_is_transport,
    ctrl_msg_is_request,
    is_ctrl_msg,
)
from mctp.packet import (
    MCTP_EID_BROADCAST,
    MCTP_EID_NULL,
    MCTP_HDR_FLAG_EOM,
    MCTP_HDR_FLAG_SOM,
    MCTP_HDR_FLAG_TO,
    MCTP_HDR_SEQ_MASK,
    MCTP_HDR_SEQ_SHIFT,
    MCTP_HDR_TAG_MASK,
    MCTP_HDR_VER_MASK,
    MCTP_HEADER_SIZE,
    MCTP_PACKET_SIZE,
    MCTP_VERSION,
    MctpError,
    MctpHeader,
    PacketBuffer,
    TxDisabledError,
)

MCTP_MAX_MESSAGE_SIZE = 65536
MSG_CTX_COUNT = 16
_CTX_INITIAL_ALLOC = 4096

RxFn = Callable[[int, bytes, bool, int, Any], None]
RawRxFn = Callable[[bytes, Any], None]
TxFn = Callable[[PacketBuffer], None]


def _err(message: str) -> None:
    log.prlog(log.LOG_ERR, "core: " + message)


def _warn(message: str) -> None:
    log.prlog(log.LOG_WARNING, "core: " + message)


def _debug(message: str) -> None:
    log.prlog(log.LOG_DEBUG, "core: " + message)


def _eid_is_special(eid: int) -> bool:
    return eid in (MCTP_EID_NULL, MCTP_EID_BROADCAST)


def _eid_is_valid(eid: int) -> bool:
    # Special and reserved EIDs may not be assigned to endpoints.
    return not _eid_is_special(eid) and eid >= 8


class RoutePolicy(enum.Enum):
    ENDPOINT = enum.auto()
    BRIDGE = enum.auto()


class Binding:
    """A physical transport binding; subclasses override ``tx`` and ``start``."""

    def __init__(
        self,
        name: str = "",
        version: int = MCTP_VERSION,
        pkt_size: int = MCTP_PACKET_SIZE,
        pkt_pad: int = 0,
        tx_fn: Optional[TxFn] = None,
        pkt_private_factory: Optional[Callable[[], Any]] = None,
        info: int = 0,
    ) -> None:
        self.name = name
        self.version = version
        self.pkt_size = pkt_size
        self.pkt_pad = pkt_pad
        self.pkt_private_factory = pkt_private_factory
        self.info = info
        self.bus: Optional[Bus] = None
        self.mctp: Optional[Mctp] = None
        self.control_rx: Optional[RxFn] = None
        self._tx_fn = tx_fn

    def alloc_packet(self, length: int) -> PacketBuffer:
        """A fresh packet sized for this binding with ``length`` bytes in use."""
        private = self.pkt_private_factory() if self.pkt_private_factory else None
        return PacketBuffer(self.pkt_size, self.pkt_pad, length, private)

    def tx(self, pkt: PacketBuffer) -> None:
        """Transmit one packet; raises MctpError on failure."""
        if self._tx_fn is None:
            raise MctpError(f"binding {self.name!r} has no transmit function")
        self._tx_fn(pkt)

    def start(self) -> None:
        """Called once the binding is registered on a bus; does nothing here."""
        return None

    def _registered_bus(self) -> "Bus":
        if self.bus is None or self.mctp is None:
            raise MctpError(f"binding {self.name!r} is not registered on a bus")
        return self.bus

    def set_tx_enabled(self, enable: bool) -> None:
        """Allow or stop transmission; enabling flushes the pending queue."""
        bus = self._registered_bus()
        bus.tx_enabled = bool(enable)
        if enable:
            try:
                bus._send_tx_queue()
            except MctpError as exc:
                _err(f"transmit queue flush failed: {exc}")

    def bus_rx(self, pkt: PacketBuffer) -> None:
        """Hand a received packet to the core for reassembly and routing."""
        bus = self._registered_bus()
        assert self.mctp is not None
        self.mctp._bus_rx(bus, self, pkt)

    def set_dynamic_eid(self, eid: int) -> None:
        """Set the bus EID; refused when the bus has a static EID."""
        bus = self._registered_bus()
        if bus.has_static_eid:
            raise MctpError("bus has a static endpoint id")
        bus.eid = eid


@dataclass(eq=False)
class Bus:
    """One bus: its binding, its EID and the packets waiting to be sent."""

    binding: Binding
    eid: int = 0
    has_static_eid: bool = False
    tx_enabled: bool = False
    tx_queue: Deque[PacketBuffer] = field(default_factory=deque)

    def _flush_all(self) -> None:
        self.tx_queue.clear()

    def _flush_message(self) -> None:
        """Drop queued packets up to and including the next end-of-message."""
        while self.tx_queue:
            pkt = self.tx_queue.popleft()
            if pkt.header().eom:
                break

    def _send_tx_queue(self) -> bool:
        """Send queued packets; False if some are held back by disabled TX."""
        error: Optional[MctpError] = None
        while self.tx_queue:
            pkt = self.tx_queue[0]
            if not self.tx_enabled:
                return False
            try:
                self.binding.tx(pkt)
            except TxDisabledError:
                return False
            except MctpError as exc:
                if exc.errno == errno.EPERM:
                    _debug("Operation not permitted, flushing the message")
                else:
                    _err(f"Failed to tx mctp packet;flushing message; {exc}")
                self._flush_message()
                error = exc
                continue
            error = None
            self.tx_queue.popleft()
        if error is not None:
            raise error
        return True


@dataclass
class _MsgCtx:
    src: int = 0
    dest: int = 0
    tag_owner: bool = False
    tag: int = 0
    last_seq: int = 0
    buf: bytearray = field(default_factory=bytearray)
    alloc_size: int = 0

    def matches(self, src: int, dest: int, tag: int) -> bool:
        return self.src == src and self.dest == dest and self.tag == tag

    def reset(self) -> None:
        self.buf.clear()

    def drop(self) -> None:
        self.src = 0

    def add_pkt(self, pkt: PacketBuffer, max_size: int) -> bool:
        if pkt.size() < MCTP_HEADER_SIZE:
            return False
        length = pkt.size() - MCTP_HEADER_SIZE
        while len(self.buf) + length > self.alloc_size:
            new_size = self.alloc_size * 2 if self.alloc_size else _CTX_INITIAL_ALLOC
            if new_size > max_size:
                _debug("Cannot allocate memory for context buffer")
                return False
            self.alloc_size = new_size
        start = pkt.mctp_hdr_off + MCTP_HEADER_SIZE
        self.buf += pkt.data[start : start + length]
        return True


class Mctp:
    """An MCTP endpoint or bridge owning its busses and reassembly contexts."""

    def __init__(self) -> None:
        self.busses: List[Bus] = []
        self.message_rx: Optional[RxFn] = None
        self.message_rx_raw: Optional[RawRxFn] = None
        self.control_rx: Optional[RxFn] = None
        self.route_policy = RoutePolicy.ENDPOINT
        self.uuid = bytes(GUID_SIZE)
        self.max_message_size = MCTP_MAX_MESSAGE_SIZE
        self._msg_ctxs = [_MsgCtx() for _ in range(MSG_CTX_COUNT)]

    def set_max_message_size(self, message_size: int) -> None:
        self.max_message_size = message_size

    def set_rx_all(self, fn: Optional[RxFn]) -> None:
        """Receive every complete message as ``fn(src, msg, tag_owner, tag, private)``."""
        self.message_rx = fn

    def set_rx_raw(self, fn: Optional[RawRxFn]) -> None:
        """Receive packets not addressed here as ``fn(packet, private)``."""
        self.message_rx_raw = fn

    def set_rx_ctrl(self, fn: Optional[RxFn]) -> None:
        """Receive non-transport control requests."""
        self.control_rx = fn

    def _find_bus_for_eid(self, eid: int) -> Bus:
        # Only the first bus is used until a neighbour table exists.
        if not self.busses:
            raise MctpError("no bus registered")
        return self.busses[0]

    def _attach(self, binding: Binding) -> Bus:
        bus = Bus(binding)
        binding.bus = bus
        binding.mctp = self
        return bus

    def _register(self, binding: Binding) -> Bus:
        if self.busses:
            raise MctpError("a bus is already registered")
        bus = self._attach(binding)
        self.busses = [bus]
        self.route_policy = RoutePolicy.ENDPOINT
        binding.start()
        return bus

    def register_bus(self, binding: Binding, eid: int) -> None:
        """Register ``binding`` as the single bus with a static EID."""
        if not _eid_is_valid(eid):
            raise MctpError(f"invalid endpoint id {eid}")
        bus = self._register(binding)
        bus.has_static_eid = True
        bus.eid = eid

    def register_bus_dynamic_eid(self, binding: Binding) -> None:
        """Register ``binding`` as the single bus; its EID is assigned later."""
        self._register(binding)

    def bridge_busses(self, b1: Binding, b2: Binding) -> None:
        """Forward every message arriving on one binding to the other."""
        if self.busses:
            raise MctpError("busses are already registered")
        self.busses = [self._attach(b1), self._attach(b2)]
        self.route_policy = RoutePolicy.BRIDGE
        for binding in (b1, b2):
            try:
                binding.start()
            except MctpError as exc:
                _warn(f"binding {binding.name!r} failed to start: {exc}")

    def _rx(
        self,
        bus: Bus,
        src: int,
        dest: int,
        buf: bytes,
        tag_owner: bool,
        tag: int,
        private: Any,
    ) -> None:
        if self.route_policy is RoutePolicy.ENDPOINT and (
            dest == bus.eid or _eid_is_special(dest)
        ):
            if is_ctrl_msg(buf) and ctrl_msg_is_request(buf):
                if self.ctrl_handle_msg(bus, src, dest, buf, tag_owner, tag, private):
                    return
            if self.message_rx is not None:
                self.message_rx(src, buf, tag_owner, tag, private)
            return

        if self.route_policy is RoutePolicy.BRIDGE:
            for dest_bus in self.busses:
                if dest_bus is bus:
                    continue
                try:
                    self._message_tx_on_bus(
                        dest_bus, src, dest, buf, tag_owner, tag, None
                    )
                except MctpError as exc:
                    _err(f"bridging message failed: {exc}")

    def _lookup_ctx(self, src: int, dest: int, tag: int) -> Optional[_MsgCtx]:
        return next((c for c in self._msg_ctxs if c.matches(src, dest, tag)), None)

    def _create_ctx(
        self, src: int, dest: int, tag_owner: bool, tag: int
    ) -> Optional[_MsgCtx]:
        ctx = next((c for c in self._msg_ctxs if not c.src), None)
        if ctx is not None:
            ctx.src, ctx.dest, ctx.tag_owner, ctx.tag = src, dest, tag_owner, tag
            ctx.reset()
        return ctx

    def _bus_rx(self, bus: Bus, binding: Binding, pkt: PacketBuffer) -> None:
        hdr = pkt.header()

        # Skip reassembly of packets that would be dropped anyway.
        if self.route_policy is RoutePolicy.ENDPOINT and (
            (hdr.dest != bus.eid and not _eid_is_special(hdr.dest))
            or hdr.version != binding.version & MCTP_HDR_VER_MASK
        ):
            if self.message_rx_raw is not None:
                self.message_rx_raw(
                    bytes(pkt.data[pkt.mctp_hdr_off : pkt.end]),
                    pkt.msg_binding_private,
                )
            return

        tag_owner, tag, seq = hdr.tag_owner, hdr.tag, hdr.seq

        if hdr.som and hdr.eom:
            start = pkt.mctp_hdr_off + MCTP_HEADER_SIZE
            self._rx(
                bus,
                hdr.src,
                hdr.dest,
                bytes(pkt.data[start : pkt.end]),
                tag_owner,
                tag,
                pkt.msg_binding_private,
            )
        elif hdr.som:
            ctx = self._lookup_ctx(hdr.src, hdr.dest, tag)
            if ctx is not None:
                ctx.reset()
            else:
                ctx = self._create_ctx(hdr.src, hdr.dest, tag_owner, tag)
                if ctx is None:
                    _err("Context buffers exhausted")
                    return
            if ctx.add_pkt(pkt, self.max_message_size):
                ctx.last_seq = seq
            else:
                ctx.drop()
        else:
            ctx = self._lookup_ctx(hdr.src, hdr.dest, tag)
            if ctx is None:
                return
            expected = (ctx.last_seq + 1) % 4
            if expected != seq:
                _debug(f"Sequence number {seq} does not match expected {expected}")
                ctx.drop()
                return
            added = ctx.add_pkt(pkt, self.max_message_size)
            if hdr.eom:
                if added:
                    self._rx(
                        bus,
                        ctx.src,
                        ctx.dest,
                        bytes(ctx.buf),
                        tag_owner,
                        tag,
                        pkt.msg_binding_private,
                    )
                ctx.drop()
            elif added:
                ctx.last_seq = seq
            else:
                ctx.drop()

    def _message_tx_on_bus(
        self,
        bus: Bus,
        src: int,
        dest: int,
        msg: bytes,
        tag_owner: bool,
        tag: int,
        private: Any,
    ) -> bool:
        binding = bus.binding
        max_payload = binding.pkt_size - MCTP_HEADER_SIZE
        msg = bytes(msg)
        _debug(
            f"Generating packets for transmission of {len(msg)} byte message "
            f"from {src} to {dest}"
        )

        count = 0
        for index, offset in enumerate(range(0, len(msg), max_payload)):
            chunk = msg[offset : offset + max_payload]
            pkt = binding.alloc_packet(len(chunk) + MCTP_HEADER_SIZE)
            if private is not None:
                pkt.msg_binding_private = copy.copy(private)

            flags = tag & MCTP_HDR_TAG_MASK
            if tag_owner:
                flags |= MCTP_HDR_FLAG_TO
            if index == 0:
                flags |= MCTP_HDR_FLAG_SOM
            if offset + len(chunk) >= len(msg):
                flags |= MCTP_HDR_FLAG_EOM
            flags |= (index & MCTP_HDR_SEQ_MASK) << MCTP_HDR_SEQ_SHIFT

            pkt.set_header(
                MctpHeader(binding.version & MCTP_HDR_VER_MASK, dest, src, flags)
            )
            start = pkt.mctp_hdr_off + MCTP_HEADER_SIZE
            pkt.data[start : start + len(chunk)] = chunk
            bus.tx_queue.append(pkt)
            count += 1

        _debug(f"Enqueued {count} packets")
        return bus._send_tx_queue()

    def message_tx(
        self,
        eid: int,
        msg: bytes,
        tag_owner: bool = False,
        tag: int = 0,
        msg_binding_private: Any = None,
    ) -> bool:
        """Queue ``msg`` for ``eid``; False if packets wait for TX to be enabled."""
        bus = self._find_bus_for_eid(eid)
        return self._message_tx_on_bus(
            bus, bus.eid, eid, msg, tag_owner, tag, msg_binding_private
        )

    def message_raw_tx(self, msg: bytes, msg_binding_private: Any = None) -> bool:
        """Send an already framed packet, header included, unchanged."""
        msg = bytes(msg)
        if len(msg) < MCTP_HEADER_SIZE:
            raise MctpError("raw packet shorter than an MCTP header")
        bus = self._find_bus_for_eid(msg[1])
        if len(msg) > bus.binding.pkt_size:
            raise MctpError(
                f"{len(msg)} bytes cannot be transferred in a single bridge packet"
            )
        pkt = bus.binding.alloc_packet(len(msg))
        if msg_binding_private is not None:
            pkt.msg_binding_private = copy.copy(msg_binding_private)
        pkt.data[pkt.mctp_hdr_off : pkt.mctp_hdr_off + len(msg)] = msg
        bus.tx_queue.append(pkt)
        return bus._send_tx_queue()

    def ctrl_handle_msg(
        self,
        bus: Bus,
        src: int,
        dest: int,
        buffer: bytes,
        tag_owner: bool,
        tag: int,
        msg_binding_private: Any,
    ) -> bool:
        """Dispatch a control request; False if no handler took it."""
        if ctrl_cmd_is_transport(buffer):
            handler = bus.binding.control_rx
        else:
            handler = self.control_rx
        if handler is None:
            return False
        handler(src, buffer, tag_owner, tag, msg_binding_private)
        return True

    def set_uuid(self, uuid: bytes) -> None:
        uuid = bytes(uuid)
        if len(uuid) != GUID_SIZE:
            raise ValueError(f"uuid must be {GUID_SIZE} bytes, got {len(uuid)}")
        self.uuid = uuid

    def ctrl_cmd_set_endpoint_id(
        self, dest_eid: int, request: SetEidRequest
    ) -> SetEidResponse:
        """Apply a Set Endpoint ID request and build its response."""
        bus = self._find_bus_for_eid(dest_eid)
        response = SetEidResponse()
        if _eid_is_special(request.eid):
            response.completion_code = MCTP_CTRL_CC_ERROR_INVALID_DATA
            response.eid_set = bus.eid
            return response

        if request.operation == SetEidOp.SET_EID:
            if len(self.busses) == 1 or bus.eid == 0:
                bus.eid = request.eid
                response.eid_set = request.eid
                status = MCTP_SET_EID_ACCEPTED
            else:
                response.eid_set = bus.eid
                status = MCTP_SET_EID_REJECTED
            response.status |= (
                status & MCTP_EID_ASSIGNMENT_STATUS_MASK
            ) << MCTP_EID_ASSIGNMENT_STATUS_SHIFT
            response.completion_code = MCTP_CTRL_CC_SUCCESS
        elif request.operation == SetEidOp.FORCE_EID:
            bus.eid = request.eid
            response.completion_code = MCTP_CTRL_CC_SUCCESS
            response.eid_set = request.eid
        else:
            response.completion_code = MCTP_CTRL_CC_ERROR_INVALID_DATA
        return response

    def ctrl_cmd_get_endpoint_id(self, dest_eid: int, bus_owner: bool) -> GetEidResponse:
        """Build the Get Endpoint ID response for the bus serving ``dest_eid``."""
        bus = self._find_bus_for_eid(dest_eid)
        eid_type = 0
        if self.route_policy is RoutePolicy.BRIDGE or bus_owner:
            eid_type |= (
                MCTP_BUS_OWNER_BRIDGE & MCTP_ENDPOINT_TYPE_MASK
            ) << MCTP_ENDPOINT_TYPE_SHIFT
        if bus.has_static_eid:
            eid_type |= (
                MCTP_STATIC_EID & MCTP_ENDPOINT_ID_TYPE_MASK
            ) << MCTP_ENDPOINT_ID_TYPE_SHIFT
        return GetEidResponse(
            completion_code=MCTP_CTRL_CC_SUCCESS,
            eid=bus.eid,
            eid_type=eid_type,
            medium_data=bus.binding.info,
        )

    def ctrl_cmd_get_endpoint_uuid(self) -> GetUuidResponse:
        return GetUuidResponse(completion_code=MCTP_CTRL_CC_SUCCESS, uuid=self.uuid)

    def ctrl_cmd_get_vdm_support(self, src_eid: int) -> GetVdmSupportResponse:
        # No capability sets beyond the default.
        return GetVdmSupportResponse(completion_code=MCTP_CTRL_CC_SUCCESS)