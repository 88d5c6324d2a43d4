"""MCTP packet header and packet buffer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

MCTP_HEADER_SIZE = 4
MCTP_BTU = 64
MCTP_PACKET_SIZE = MCTP_BTU + MCTP_HEADER_SIZE
MCTP_VERSION = 1

MCTP_EID_NULL = 0x00
MCTP_EID_BROADCAST = 0xFF

MCTP_HDR_FLAG_SOM = 0x80
MCTP_HDR_FLAG_EOM = 0x40
MCTP_HDR_FLAG_TO = 0x08
MCTP_HDR_SEQ_SHIFT = 4
MCTP_HDR_SEQ_MASK = 0x3
MCTP_HDR_TAG_SHIFT = 0
MCTP_HDR_TAG_MASK = 0x7
MCTP_HDR_VER_MASK = 0xF


class MctpError(Exception):
    """An MCTP operation failed."""

    def __init__(self, message: str = "", errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.errno = errno


class TxDisabledError(MctpError):
    """Transmission is currently disabled on the bus."""

    def __init__(self, message: str = "transmit disabled") -> None:
        super().__init__(message)


@dataclass
class MctpHeader:
    """The four-byte MCTP transport header."""

    ver: int = 0
    dest: int = 0
    src: int = 0
    flags_seq_tag: int = 0

    def __post_init__(self) -> None:
        for name in ("ver", "dest", "src", "flags_seq_tag"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"{name} out of byte range: {value}")

    @property
    def version(self) -> int:
        return self.ver & MCTP_HDR_VER_MASK

    @property
    def som(self) -> bool:
        return bool(self.flags_seq_tag & MCTP_HDR_FLAG_SOM)

    @property
    def eom(self) -> bool:
        return bool(self.flags_seq_tag & MCTP_HDR_FLAG_EOM)

    @property
    def tag_owner(self) -> bool:
        return bool(self.flags_seq_tag & MCTP_HDR_FLAG_TO)

    @property
    def seq(self) -> int:
        return (self.flags_seq_tag >> MCTP_HDR_SEQ_SHIFT) & MCTP_HDR_SEQ_MASK

    @property
    def tag(self) -> int:
        return (self.flags_seq_tag >> MCTP_HDR_TAG_SHIFT) & MCTP_HDR_TAG_MASK

    def pack(self) -> bytes:
        return bytes((self.ver, self.dest, self.src, self.flags_seq_tag))

    @classmethod
    def from_bytes(cls, data: bytes) -> "MctpHeader":
        if len(data) < MCTP_HEADER_SIZE:
            raise MctpError(f"need {MCTP_HEADER_SIZE} header bytes, got {len(data)}")
        ver, dest, src, flags = bytes(data[:MCTP_HEADER_SIZE])
        return cls(ver, dest, src, flags)


class PacketBuffer:
    """A packet with headroom for binding-specific framing before the MCTP header."""

    def __init__(
        self,
        pkt_size: int,
        pkt_pad: int = 0,
        length: int = 0,
        msg_binding_private: Any = None,
    ) -> None:
        self.capacity = pkt_size + pkt_pad
        if pkt_pad + length > self.capacity:
            raise MctpError(f"length {length} exceeds packet size {pkt_size}")
        self.data = bytearray(self.capacity)
        self.start = pkt_pad
        self.end = self.start + length
        self.mctp_hdr_off = self.start
        self.msg_binding_private = msg_binding_private

    def size(self) -> int:
        """Number of bytes between start and end."""
        return self.end - self.start

    def end_index(self) -> int:
        """Offset of the end of the packet, including any leading framing."""
        return self.end

    def header(self) -> MctpHeader:
        off = self.mctp_hdr_off
        return MctpHeader.from_bytes(self.data[off : off + MCTP_HEADER_SIZE])

    def set_header(self, hdr: MctpHeader) -> None:
        off = self.mctp_hdr_off
        self.data[off : off + MCTP_HEADER_SIZE] = hdr.pack()

    def payload(self) -> bytes:
        """Bytes following the MCTP header up to the end of the packet."""
        return bytes(self.data[self.mctp_hdr_off + MCTP_HEADER_SIZE : self.end])

    def push(self, data: bytes) -> None:
        """Append ``data`` at the end of the packet."""
        if self.end + len(data) > self.capacity:
            raise MctpError("packet buffer overflow")
        self.data[self.end : self.end + len(data)] = data
        self.end += len(data)

    def alloc_start(self, size: int) -> memoryview:
        """Claim ``size`` bytes of headroom and return a view over them."""
        if size > self.start:
            raise MctpError(f"not enough headroom for {size} bytes")
        self.start -= size
        return memoryview(self.data)[self.start : self.start + size]

    def alloc_end(self, size: int) -> memoryview:
        """Claim ``size`` bytes after the end and return a view over them."""
        if size >= self.capacity - self.end:
            raise MctpError(f"not enough tailroom for {size} bytes")
        view = memoryview(self.data)[self.end : self.end + size]
        self.end += size
        return view