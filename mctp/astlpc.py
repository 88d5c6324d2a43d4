"""MCTP binding over the LPC bus with a KCS interface for signalling."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Callable, Optional, Union

from mctp import log
from mctp.core import Binding
from mctp.packet import MCTP_HEADER_SIZE, MCTP_PACKET_SIZE, MctpError, PacketBuffer

MCTP_MAGIC = 0x4D435450
BMC_VER_MIN = 1
BMC_VER_CUR = 1

# Layout of the receive and transmit areas in the LPC window.
RX_OFFSET = 0x100
RX_SIZE = 0x100
TX_OFFSET = 0x200
TX_SIZE = 0x100

LPC_WIN_SIZE = 1 * 1024 * 1024

KCS_STATUS_BMC_READY = 0x80
KCS_STATUS_CHANNEL_ACTIVE = 0x40
KCS_STATUS_IBF = 0x02
KCS_STATUS_OBF = 0x01

KCS_MSG_INIT = 0x00
KCS_MSG_RX_START = 0x01
KCS_MSG_TX_COMPLETE = 0x02
KCS_MSG_DUMMY = 0xFF

_HEADER_FORMAT = ">IHHHHHHIIII"
_NEGOTIATED_VER_OFFSET = 12
_LAYOUT_OFFSET = 16

LpcMap = Union[bytearray, memoryview]


def _warn(message: str) -> None:
    log.prlog(log.LOG_WARNING, "astlpc: " + message)


def _debug(message: str) -> None:
    log.prlog(log.LOG_DEBUG, "astlpc: " + message)


class KcsReg(enum.IntEnum):
    DATA = 0
    STATUS = 1


class AstLpcOps:
    """Access to the KCS registers and the LPC window through callables.

    Each callable raises MctpError on failure. ``kcs_read(reg)`` returns a
    byte, ``kcs_write(reg, val)`` stores one, ``lpc_read(offset, length)``
    returns bytes and ``lpc_write(data, offset)`` stores them.
    """

    def __init__(
        self,
        kcs_read: Optional[Callable[[KcsReg], int]] = None,
        kcs_write: Optional[Callable[[KcsReg, int], None]] = None,
        lpc_read: Optional[Callable[[int, int], bytes]] = None,
        lpc_write: Optional[Callable[[bytes, int], None]] = None,
    ) -> None:
        self._kcs_read = kcs_read
        self._kcs_write = kcs_write
        self._lpc_read = lpc_read
        self._lpc_write = lpc_write

    def kcs_read(self, reg: KcsReg) -> int:
        if self._kcs_read is None:
            raise MctpError("no KCS read operation")
        return int(self._kcs_read(KcsReg(reg))) & 0xFF

    def kcs_write(self, reg: KcsReg, val: int) -> None:
        if self._kcs_write is None:
            raise MctpError("no KCS write operation")
        self._kcs_write(KcsReg(reg), val & 0xFF)

    def lpc_read(self, offset: int, length: int) -> bytes:
        if self._lpc_read is None:
            raise MctpError("no LPC read operation")
        return bytes(self._lpc_read(offset, length))

    def lpc_write(self, data: bytes, offset: int) -> None:
        if self._lpc_write is None:
            raise MctpError("no LPC write operation")
        self._lpc_write(bytes(data), offset)


@dataclass
class LpcMapHeader:
    """The header at the start of the LPC window, stored big-endian."""

    magic: int = 0
    bmc_ver_min: int = 0
    bmc_ver_cur: int = 0
    host_ver_min: int = 0
    host_ver_cur: int = 0
    negotiated_ver: int = 0
    pad0: int = 0
    rx_offset: int = 0
    rx_size: int = 0
    tx_offset: int = 0
    tx_size: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            _HEADER_FORMAT,
            self.magic,
            self.bmc_ver_min,
            self.bmc_ver_cur,
            self.host_ver_min,
            self.host_ver_cur,
            self.negotiated_ver,
            self.pad0,
            self.rx_offset,
            self.rx_size,
            self.tx_offset,
            self.tx_size,
        )


class AstLpcBinding(Binding):
    """BMC side of the LPC binding.

    With ``lpc_map`` given, the LPC window is accessed directly through that
    buffer; otherwise every access goes through the ``lpc_read`` and
    ``lpc_write`` operations.
    """

    def __init__(self, ops: AstLpcOps, lpc_map: Optional[LpcMap] = None) -> None:
        super().__init__(
            name="astlpc", version=1, pkt_size=MCTP_PACKET_SIZE, pkt_pad=0
        )
        self.ops = ops
        self.lpc_map = lpc_map
        # In indirect mode a separate copy of the header is kept and synced.
        self.priv_hdr: Optional[LpcMapHeader] = (
            LpcMapHeader() if lpc_map is None else None
        )

    @property
    def _direct(self) -> bool:
        return self.lpc_map is not None

    def _lpc_write(self, offset: int, data: bytes) -> None:
        if self.lpc_map is not None:
            self.lpc_map[offset : offset + len(data)] = data
        else:
            self.ops.lpc_write(data, offset)

    def _lpc_read(self, offset: int, length: int) -> bytes:
        if self.lpc_map is not None:
            return bytes(self.lpc_map[offset : offset + length])
        return self.ops.lpc_read(offset, length)

    def _kcs_set_status(self, status: int) -> None:
        # Some hardware only interrupts the host on a data write, so follow
        # the status update with a dummy 0xff data byte.
        status |= KCS_STATUS_OBF
        try:
            self.ops.kcs_write(KcsReg.STATUS, status)
        except MctpError:
            _warn("KCS status write failed")
            raise
        try:
            self.ops.kcs_write(KcsReg.DATA, KCS_MSG_DUMMY)
        except MctpError:
            _warn("KCS dummy data write failed")
            raise

    def _kcs_send(self, data: int) -> None:
        while True:
            try:
                status = self.ops.kcs_read(KcsReg.STATUS)
            except MctpError:
                _warn("KCS status read failed")
                raise
            if not status & KCS_STATUS_OBF:
                break
        try:
            self.ops.kcs_write(KcsReg.DATA, data)
        except MctpError:
            _warn("KCS data write failed")
            raise

    def start(self) -> None:
        """Publish the window header and mark the BMC ready."""
        if self.lpc_map is not None:
            struct.pack_into(
                ">IHH", self.lpc_map, 0, MCTP_MAGIC, BMC_VER_MIN, BMC_VER_CUR
            )
            struct.pack_into(
                ">IIII", self.lpc_map, _LAYOUT_OFFSET,
                RX_OFFSET, RX_SIZE, TX_OFFSET, TX_SIZE,
            )
        else:
            hdr = self.priv_hdr if self.priv_hdr is not None else LpcMapHeader()
            self.priv_hdr = hdr
            hdr.magic = MCTP_MAGIC
            hdr.bmc_ver_min = BMC_VER_MIN
            hdr.bmc_ver_cur = BMC_VER_CUR
            hdr.rx_offset = RX_OFFSET
            hdr.rx_size = RX_SIZE
            hdr.tx_offset = TX_OFFSET
            hdr.tx_size = TX_SIZE
            self.ops.lpc_write(hdr.pack(), 0)

        try:
            self.ops.kcs_write(KcsReg.STATUS, KCS_STATUS_BMC_READY | KCS_STATUS_OBF)
        except MctpError:
            _warn("KCS write failed")
            raise

    def tx(self, pkt: PacketBuffer) -> None:
        """Copy the packet to the host's receive area and signal the host."""
        length = pkt.size()
        off = pkt.mctp_hdr_off
        _debug(f"tx: Transmitting {length}-byte packet")
        if length > RX_SIZE - 4:
            _warn(f"invalid TX len 0x{length:x}")
            raise MctpError(f"invalid TX len 0x{length:x}")

        self._lpc_write(RX_OFFSET, struct.pack(">I", length))
        self._lpc_write(RX_OFFSET + 4, bytes(pkt.data[off : off + length]))

        self.set_tx_enabled(False)
        try:
            self._kcs_send(KCS_MSG_RX_START)
        except MctpError:
            pass

    def _init_channel(self) -> None:
        # Only version 1 is offered; no real negotiation takes place.
        self._lpc_write(_NEGOTIATED_VER_OFFSET, struct.pack(">H", 1))
        try:
            self._kcs_set_status(
                KCS_STATUS_BMC_READY | KCS_STATUS_CHANNEL_ACTIVE | KCS_STATUS_OBF
            )
        except MctpError:
            pass
        self.set_tx_enabled(True)

    def _rx_start(self) -> None:
        (length,) = struct.unpack(">I", self._lpc_read(TX_OFFSET, 4))

        if (
            length < MCTP_HEADER_SIZE
            or length > TX_SIZE - 4
            or length > self.pkt_size
        ):
            _warn(f"invalid RX len 0x{length:x}")
            return

        pkt = self.alloc_packet(length)
        off = pkt.mctp_hdr_off
        pkt.data[off : off + length] = self._lpc_read(TX_OFFSET + 4, length)
        self.bus_rx(pkt)

        try:
            self._kcs_send(KCS_MSG_TX_COMPLETE)
        except MctpError:
            pass

    def _tx_complete(self) -> None:
        self.set_tx_enabled(True)

    def poll(self) -> None:
        """Handle one pending message from the host, if any."""
        try:
            status = self.ops.kcs_read(KcsReg.STATUS)
        except MctpError:
            _warn("KCS read error")
            raise
        _debug(f"poll: status: 0x{status:x}")

        if not status & KCS_STATUS_IBF:
            return

        try:
            data = self.ops.kcs_read(KcsReg.DATA)
        except MctpError:
            _warn("KCS data read error")
            raise
        _debug(f"poll: data: 0x{data:x}")

        if data == KCS_MSG_INIT:
            self._init_channel()
        elif data == KCS_MSG_RX_START:
            self._rx_start()
        elif data == KCS_MSG_TX_COMPLETE:
            self._tx_complete()
        elif data == KCS_MSG_DUMMY:
            pass
        else:
            _warn(f"unknown message 0x{data:x}")