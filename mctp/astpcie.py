"""MCTP binding over PCIe vendor-defined messages through the aspeed-mctp driver."""

from __future__ import annotations

import array
import enum
import fcntl
import os
import select
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from mctp import log
from mctp.core import Binding
from mctp.packet import MCTP_BTU, MCTP_HEADER_SIZE, MCTP_PACKET_SIZE, MctpError, PacketBuffer

AST_DRV_FILE = "/dev/aspeed-mctp"

ASPEED_MCTP_PCIE_VDM_HDR_SIZE = 16
ASPEED_MCTP_READY = "PCIE_READY"
ASPEED_MCTP_EID_INFO_MAX = 256

MCTP_ASTPCIE_BINDING_DEFAULT_BUFFER = 1024
_RX_READ_SIZE = MCTP_ASTPCIE_BINDING_DEFAULT_BUFFER * 4
ASTPCIE_PACKET_SIZE = ASPEED_MCTP_PCIE_VDM_HDR_SIZE + MCTP_BTU

PCIE_HDR_SIZE = 12

# Template values fixed by the PCIe VDM transport specification.
MSG_4DW_HDR = 0x70
MCTP_PCIE_VDM_ATTR = 0x10
MSG_CODE_VDM_TYPE_1 = 0x7F
VENDOR_ID_DMTF_VDM = 0x1AB4

PCIE_HDR_ROUTING_MASK = 0x7
PCIE_HDR_DATA_LEN_MASK = 0x3FF
PCIE_HDR_PAD_LEN_SHIFT = 4
PCIE_HDR_PAD_LEN_MASK = 0x3
PCIE_MAX_DATA_LEN_DW = 1024
PCIE_MAX_DATA_LEN = PCIE_MAX_DATA_LEN_DW * 4

# Linux ioctl request encoding.
_IOC_NONE = 0
_IOC_WRITE = 1
_IOC_READ = 2
ASPEED_MCTP_IOCTL_BASE = 0x4D

_GET_BDF_FORMAT = "=H"
_GET_MEDIUM_ID_FORMAT = "=B"
_TYPE_HANDLER_FORMAT = "=BxHHH"
_GET_EID_INFO_FORMAT = "=QHB5x"
_SET_EID_INFO_FORMAT = "=QH6x"
_EID_INFO_FORMAT = "=BxH"
_FILTER_EID_FORMAT = "=B?"
_GET_MTU_FORMAT = "=B"


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ASPEED_MCTP_IOCTL_BASE << 8) | nr


ASPEED_MCTP_IOCTL_FILTER_EID = _ioc(_IOC_WRITE, 0, struct.calcsize(_FILTER_EID_FORMAT))
ASPEED_MCTP_IOCTL_GET_BDF = _ioc(_IOC_READ, 1, struct.calcsize(_GET_BDF_FORMAT))
ASPEED_MCTP_IOCTL_GET_MEDIUM_ID = _ioc(
    _IOC_READ, 2, struct.calcsize(_GET_MEDIUM_ID_FORMAT)
)
ASPEED_MCTP_IOCTL_GET_MTU = _ioc(_IOC_READ, 3, struct.calcsize(_GET_MTU_FORMAT))
ASPEED_MCTP_IOCTL_REGISTER_DEFAULT_HANDLER = _ioc(_IOC_NONE, 4, 0)
ASPEED_MCTP_IOCTL_REGISTER_TYPE_HANDLER = _ioc(
    _IOC_WRITE, 6, struct.calcsize(_TYPE_HANDLER_FORMAT)
)
ASPEED_MCTP_IOCTL_UNREGISTER_TYPE_HANDLER = _ioc(
    _IOC_WRITE, 7, struct.calcsize(_TYPE_HANDLER_FORMAT)
)
ASPEED_MCTP_IOCTL_GET_EID_INFO = _ioc(
    _IOC_READ | _IOC_WRITE, 8, struct.calcsize(_GET_EID_INFO_FORMAT)
)
ASPEED_MCTP_IOCTL_SET_EID_INFO = _ioc(
    _IOC_WRITE, 9, struct.calcsize(_SET_EID_INFO_FORMAT)
)


def _err(message: str) -> None:
    log.prlog(log.LOG_ERR, "astpcie: " + message)


def _warn(message: str) -> None:
    log.prlog(log.LOG_WARNING, "astpcie: " + message)


def _debug(message: str) -> None:
    log.prlog(log.LOG_DEBUG, "astpcie: " + message)


def _pcie_align(size: int) -> int:
    """Round up to a whole number of dwords."""
    return (size + 3) & ~3


class PcieRouting(enum.IntEnum):
    """Routing types of PCIe messages that carry MCTP."""

    TO_RC = 0
    BY_ID = 2
    BROADCAST_FROM_RC = 3


_SUPPORTED_ROUTING = frozenset(int(r) for r in PcieRouting)


@dataclass
class PcieHeader:
    """The twelve-byte PCIe VDM header that precedes the MCTP header."""

    routing: int = 0
    data_len: int = 0
    requester: int = 0
    pad_len: int = 0
    target: int = 0
    fmt_type: int = MSG_4DW_HDR
    mbz: int = 0
    attr: int = MCTP_PCIE_VDM_ATTR
    tag: int = 0
    code: int = MSG_CODE_VDM_TYPE_1
    vendor: int = VENDOR_ID_DMTF_VDM

    def __post_init__(self) -> None:
        limits = {
            "routing": PCIE_HDR_ROUTING_MASK,
            "data_len": PCIE_HDR_DATA_LEN_MASK,
            "requester": 0xFFFF,
            "pad_len": PCIE_HDR_PAD_LEN_MASK,
            "target": 0xFFFF,
            "fmt_type": 0xFF,
            "mbz": 0xFF,
            "attr": 0xFF,
            "tag": 0xFF,
            "code": 0xFF,
            "vendor": 0xFFFF,
        }
        for name, limit in limits.items():
            value = int(getattr(self, name))
            if not 0 <= value <= limit:
                raise ValueError(f"{name} out of range: {value}")
            setattr(self, name, value)

    def pack(self) -> bytes:
        byte0 = (self.fmt_type & ~PCIE_HDR_ROUTING_MASK & 0xFF) | self.routing
        byte2 = (self.attr & ~0x03 & 0xFF) | ((self.data_len >> 8) & 0x03)
        byte3 = self.data_len & 0xFF
        pad_bits = PCIE_HDR_PAD_LEN_MASK << PCIE_HDR_PAD_LEN_SHIFT
        byte6 = (self.tag & ~pad_bits & 0xFF) | (self.pad_len << PCIE_HDR_PAD_LEN_SHIFT)
        return struct.pack(
            ">BBBBHBBHH",
            byte0,
            self.mbz,
            byte2,
            byte3,
            self.requester,
            byte6,
            self.code,
            self.target,
            self.vendor,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "PcieHeader":
        raw = bytes(data)
        if len(raw) < PCIE_HDR_SIZE:
            raise MctpError(f"need {PCIE_HDR_SIZE} PCIe header bytes, got {len(raw)}")
        byte0, mbz, byte2, byte3, requester, byte6, code, target, vendor = struct.unpack(
            ">BBBBHBBHH", raw[:PCIE_HDR_SIZE]
        )
        pad_bits = PCIE_HDR_PAD_LEN_MASK << PCIE_HDR_PAD_LEN_SHIFT
        return cls(
            routing=byte0 & PCIE_HDR_ROUTING_MASK,
            data_len=((byte2 & 0x03) << 8) | byte3,
            requester=requester,
            pad_len=(byte6 >> PCIE_HDR_PAD_LEN_SHIFT) & PCIE_HDR_PAD_LEN_MASK,
            target=target,
            fmt_type=byte0 & ~PCIE_HDR_ROUTING_MASK & 0xFF,
            mbz=mbz,
            attr=byte2 & ~0x03 & 0xFF,
            tag=byte6 & ~pad_bits & 0xFF,
            code=code,
            vendor=vendor,
        )

    def payload_size(self) -> int:
        """Payload bytes after the MCTP header; a length of 0 means 1024 dwords."""
        length_dw = self.data_len or PCIE_MAX_DATA_LEN_DW
        return length_dw * 4 - self.pad_len


@dataclass
class AstPciePktPrivate:
    """Per-packet data: how the packet is routed and the peer's BDF."""

    routing: int = PcieRouting.TO_RC
    remote_id: int = 0


class AspeedMctpDevice:
    """The aspeed-mctp character device and its ioctl interface."""

    def __init__(self, path: str = AST_DRV_FILE) -> None:
        self.path = path
        self._fd = -1

    def __enter__(self) -> "AspeedMctpDevice":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self) -> None:
        try:
            self._fd = os.open(self.path, os.O_RDWR)
        except OSError as exc:
            _err(f"Cannot open: {self.path}, errno = {exc.errno}")
            raise MctpError(f"cannot open {self.path}", errno=exc.errno) from exc

    def close(self) -> None:
        if self._fd >= 0:
            os.close(self._fd)
        self._fd = -1

    def fileno(self) -> int:
        return self._fd

    def _require_fd(self) -> int:
        if self._fd < 0:
            raise MctpError(f"{self.path} is not open")
        return self._fd

    def _ioctl(self, request: int, arg=0):
        fd = self._require_fd()
        try:
            if isinstance(arg, bytearray):
                return fcntl.ioctl(fd, request, arg, True)
            return fcntl.ioctl(fd, request, arg)
        except OSError as exc:
            raise MctpError(f"ioctl 0x{request:08x} failed", errno=exc.errno) from exc

    def read(self, size: int) -> bytes:
        fd = self._require_fd()
        try:
            return os.read(fd, size)
        except OSError as exc:
            raise MctpError("read failed", errno=exc.errno) from exc

    def write(self, data: bytes) -> int:
        fd = self._require_fd()
        try:
            return os.write(fd, bytes(data))
        except OSError as exc:
            raise MctpError("write failed", errno=exc.errno) from exc

    def get_bdf(self) -> int:
        """PCI bus/device/function of the MCTP controller."""
        buf = bytearray(struct.calcsize(_GET_BDF_FORMAT))
        self._ioctl(ASPEED_MCTP_IOCTL_GET_BDF, buf)
        return struct.unpack(_GET_BDF_FORMAT, buf)[0]

    def get_medium_id(self) -> int:
        """Physical medium identifier, which follows the PCIe revision."""
        buf = bytearray(struct.calcsize(_GET_MEDIUM_ID_FORMAT))
        self._ioctl(ASPEED_MCTP_IOCTL_GET_MEDIUM_ID, buf)
        return struct.unpack(_GET_MEDIUM_ID_FORMAT, buf)[0]

    def register_default_handler(self) -> None:
        """Receive every message not dispatched to another client."""
        self._ioctl(ASPEED_MCTP_IOCTL_REGISTER_DEFAULT_HANDLER)

    def _type_handler(
        self,
        request: int,
        mctp_type: int,
        pci_vendor_id: int,
        vendor_type: int,
        vendor_type_mask: int,
    ) -> None:
        buf = bytearray(
            struct.pack(
                _TYPE_HANDLER_FORMAT,
                mctp_type,
                pci_vendor_id,
                vendor_type,
                vendor_type_mask,
            )
        )
        self._ioctl(request, buf)

    def register_type_handler(
        self,
        mctp_type: int,
        pci_vendor_id: int = 0,
        vendor_type: int = 0,
        vendor_type_mask: int = 0,
    ) -> None:
        """Receive messages of one MCTP type or PCI vendor-defined type."""
        self._type_handler(
            ASPEED_MCTP_IOCTL_REGISTER_TYPE_HANDLER,
            mctp_type,
            pci_vendor_id,
            vendor_type,
            vendor_type_mask,
        )

    def unregister_type_handler(
        self,
        mctp_type: int,
        pci_vendor_id: int = 0,
        vendor_type: int = 0,
        vendor_type_mask: int = 0,
    ) -> None:
        self._type_handler(
            ASPEED_MCTP_IOCTL_UNREGISTER_TYPE_HANDLER,
            mctp_type,
            pci_vendor_id,
            vendor_type,
            vendor_type_mask,
        )

    def get_eid_info(self, count: int, start_eid: int = 0) -> List[Tuple[int, int]]:
        """Up to ``count`` (eid, bdf) mappings, starting at ``start_eid``."""
        if not 0 <= count <= 0xFFFF:
            raise ValueError(f"count out of range: {count}")
        if not 0 <= start_eid <= 0xFF:
            raise ValueError(f"start_eid out of range: {start_eid}")
        entry_size = struct.calcsize(_EID_INFO_FORMAT)
        entries = array.array("B", bytes(max(count, 1) * entry_size))
        address = entries.buffer_info()[0]
        buf = bytearray(struct.pack(_GET_EID_INFO_FORMAT, address, count, start_eid))
        self._ioctl(ASPEED_MCTP_IOCTL_GET_EID_INFO, buf)
        _, returned, _ = struct.unpack(_GET_EID_INFO_FORMAT, buf)
        raw = entries.tobytes()
        return [
            struct.unpack_from(_EID_INFO_FORMAT, raw, i * entry_size)
            for i in range(min(returned, count))
        ]

    def set_eid_info(self, entries: Iterable[Tuple[int, int]]) -> None:
        """Replace the driver's endpoint mappings with ``(eid, bdf)`` pairs."""
        packed = [struct.pack(_EID_INFO_FORMAT, eid, bdf) for eid, bdf in entries]
        table = array.array("B", b"".join(packed) or bytes(1))
        address = table.buffer_info()[0]
        buf = bytearray(struct.pack(_SET_EID_INFO_FORMAT, address, len(packed)))
        self._ioctl(ASPEED_MCTP_IOCTL_SET_EID_INFO, buf)


class AstPcieBinding(Binding):
    """Binding carrying MCTP packets as PCIe VDMs through the aspeed-mctp device."""

    def __init__(self, device: Optional[AspeedMctpDevice] = None) -> None:
        super().__init__(
            name="astpcie",
            version=1,
            pkt_size=MCTP_PACKET_SIZE,
            pkt_pad=PCIE_HDR_SIZE,
            pkt_private_factory=AstPciePktPrivate,
        )
        if self.pkt_size - MCTP_HEADER_SIZE > PCIE_MAX_DATA_LEN:
            raise MctpError("packet size exceeds the PCIe data limit")
        self.device = device if device is not None else AspeedMctpDevice()
        self.bdf = 0
        self.medium_id = 0

    def start(self) -> None:
        """Open the device and read its BDF and medium id."""
        self.device.open()
        try:
            self.bdf = self.device.get_bdf()
            self.medium_id = self.device.get_medium_id()
        except MctpError:
            self.device.close()
            raise

    def tx(self, pkt: PacketBuffer) -> None:
        """Frame one packet with a PCIe VDM header and write it to the device."""
        private = pkt.msg_binding_private
        routing = int(getattr(private, "routing", PcieRouting.TO_RC))
        remote_id = int(getattr(private, "remote_id", 0))
        if remote_id == self.bdf:
            _err("Invalid Target ID (matches own BDF)")
            raise MctpError("invalid target id (matches own BDF)")

        size = pkt.size()
        aligned = _pcie_align(size)
        payload_len_dw = aligned // 4 - MCTP_HEADER_SIZE // 4
        pad = aligned - size
        _debug(f"TX, len: {payload_len_dw}, pad: {pad}")

        hdr = PcieHeader(
            routing=routing & PCIE_HDR_ROUTING_MASK,
            data_len=payload_len_dw,
            requester=self.bdf,
            pad_len=pad,
            target=remote_id,
        )
        frame = hdr.pack() + bytes(pkt.data[pkt.start : pkt.end]) + bytes(pad)
        log.trace_common("TX", frame)

        try:
            self.device.write(frame)
        except MctpError:
            _err("TX error")
            raise

    def poll(self, timeout: int) -> int:
        """Wait up to ``timeout`` ms; return the device's poll events, 0 on timeout."""
        poller = select.poll()
        poller.register(self.device.fileno(), select.POLLIN | select.POLLOUT)
        try:
            events = poller.poll(timeout)
        except OSError as exc:
            _warn(f"Poll returned error status (errno={exc.errno})")
            raise MctpError("poll failed", errno=exc.errno) from exc
        return events[0][1] if events else 0

    def rx(self) -> None:
        """Read one frame from the device and pass its MCTP packet to the core."""
        try:
            data = bytes(self.device.read(_RX_READ_SIZE))
        except MctpError as exc:
            _err(f"Reading RX data failed (errno = {exc.errno})")
            raise

        log.trace_common("RX", data)

        if len(data) != ASTPCIE_PACKET_SIZE:
            _err(f"Incorrect packet size: {len(data)}")
            raise MctpError(f"incorrect packet size: {len(data)}")

        hdr = PcieHeader.from_bytes(data)
        if hdr.routing not in _SUPPORTED_ROUTING:
            _err(f"unsupported routing value: {hdr.routing}")
            raise MctpError(f"unsupported routing value: {hdr.routing}")

        length = hdr.payload_size() + MCTP_HEADER_SIZE
        chunk = data[PCIE_HDR_SIZE : PCIE_HDR_SIZE + length]
        pkt = self.alloc_packet(0)
        if len(chunk) != length:
            _err("Cannot push to pktbuf")
            raise MctpError("packet longer than the received frame")
        try:
            pkt.push(chunk)
        except MctpError:
            _err("Cannot push to pktbuf")
            raise

        pkt.msg_binding_private = AstPciePktPrivate(
            routing=PcieRouting(hdr.routing), remote_id=hdr.requester
        )
        self.bus_rx(pkt)

    def get_bdf(self) -> int:
        """Read the BDF from the device again and remember it."""
        self.bdf = self.device.get_bdf()
        return self.bdf

    def register_default_handler(self) -> None:
        self.device.register_default_handler()

    def register_type_handler(
        self,
        mctp_type: int,
        pci_vendor_id: int = 0,
        vendor_type: int = 0,
        vendor_type_mask: int = 0,
    ) -> None:
        self.device.register_type_handler(
            mctp_type, pci_vendor_id, vendor_type, vendor_type_mask
        )

    def unregister_type_handler(
        self,
        mctp_type: int,
        pci_vendor_id: int = 0,
        vendor_type: int = 0,
        vendor_type_mask: int = 0,
    ) -> None:
        self.device.unregister_type_handler(
            mctp_type, pci_vendor_id, vendor_type, vendor_type_mask
        )

    def get_eid_info(self, count: int, start_eid: int = 0) -> List[Tuple[int, int]]:
        return self.device.get_eid_info(count, start_eid)

    def set_eid_info(self, entries: Iterable[Tuple[int, int]]) -> None:
        self.device.set_eid_info(entries)

    def fileno(self) -> int:
        return self.device.fileno()

    def close(self) -> None:
        self.device.close()