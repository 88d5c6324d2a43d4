"""MCTP binding over an I3C device file."""

from __future__ import annotations

import os
import select
from dataclasses import dataclass

from mctp import log
from mctp.core import Binding
from mctp.packet import (
    MCTP_BTU,
    MCTP_HEADER_SIZE,
    MCTP_PACKET_SIZE,
    MctpError,
    PacketBuffer,
)

# One byte beyond the largest packet, so oversized reads are detected.
_RX_READ_SIZE = MCTP_PACKET_SIZE + 1


def _err(message: str) -> None:
    log.prlog(log.LOG_ERR, "asti3c: " + message)


def _warn(message: str) -> None:
    log.prlog(log.LOG_WARNING, "asti3c: " + message)


def _debug(message: str) -> None:
    log.prlog(log.LOG_DEBUG, "asti3c: " + message)


@dataclass
class AstI3cPktPrivate:
    """Per-packet data: the file descriptor the packet travels over."""

    fd: int = -1


class AstI3cBinding(Binding):
    """Binding that exchanges whole MCTP packets with an I3C device file."""

    def __init__(self) -> None:
        super().__init__(
            name="asti3c",
            version=1,
            pkt_size=MCTP_PACKET_SIZE,
            pkt_pad=0,
            pkt_private_factory=AstI3cPktPrivate,
        )

    def tx(self, pkt: PacketBuffer) -> None:
        """Write the packet to the descriptor held in its private data."""
        private = pkt.msg_binding_private
        fd = getattr(private, "fd", -1)
        if fd < 0:
            _err("Invalid file descriptor passed")
            raise MctpError("invalid file descriptor")

        # The PEC byte is appended by the hardware.
        data = bytes(pkt.data[pkt.start : pkt.end])
        _debug(f"Transmitting packet, len: {len(data)}")
        log.trace_common("TX", data)

        try:
            written = os.write(fd, data)
        except OSError as exc:
            _err("TX error")
            raise MctpError("TX error", errno=exc.errno) from exc
        if written != len(data):
            _err("TX error")
            raise MctpError("short write")

    def rx(self, fd: int) -> None:
        """Read one packet from ``fd`` and pass it to the core."""
        if fd < 0:
            _err("Invalid file descriptor")
            raise MctpError("invalid file descriptor")

        try:
            data = os.read(fd, _RX_READ_SIZE)
        except OSError as exc:
            _err(f"Reading RX data failed (errno = {exc.errno})")
            raise MctpError("reading RX data failed", errno=exc.errno) from exc

        log.trace_common("RX", data)

        # The PEC is checked by the hardware and never reaches us.
        if len(data) > MCTP_BTU + MCTP_HEADER_SIZE or len(data) < MCTP_HEADER_SIZE:
            _err(f"Incorrect packet size: {len(data)}")
            raise MctpError(f"incorrect packet size: {len(data)}")

        pkt = self.alloc_packet(0)
        try:
            pkt.push(data)
        except MctpError:
            _err("Cannot push to pktbuf")
            raise
        pkt.msg_binding_private = AstI3cPktPrivate(fd=fd)
        self.bus_rx(pkt)


def poll(fd: int, timeout: int) -> int:
    """Wait up to ``timeout`` ms for ``fd``; return its poll events, 0 on timeout."""
    poller = select.poll()
    poller.register(fd, select.POLLIN | select.POLLOUT)
    try:
        events = poller.poll(timeout)
    except OSError as exc:
        _warn(f"Poll returned error status (errno={exc.errno})")
        raise MctpError("poll failed", errno=exc.errno) from exc
    return events[0][1] if events else 0