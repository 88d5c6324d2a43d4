import os
import select

import pytest

from mctp.asti3c import AstI3cBinding, AstI3cPktPrivate, poll
from mctp.core import Mctp
from mctp.packet import MCTP_BTU, MCTP_HEADER_SIZE, MctpError, MctpHeader


@pytest.fixture
def pipe():
    r, w = os.pipe()
    yield r, w
    os.close(r)
    os.close(w)


def _endpoint(eid):
    mctp = Mctp()
    received = []
    mctp.set_rx_all(
        lambda src, msg, to, tag, prv: received.append((src, msg, to, tag, prv))
    )
    binding = AstI3cBinding()
    mctp.register_bus(binding, eid)
    return mctp, binding, received


def test_rx_delivers_message(pipe):
    r, w = pipe
    _, binding, received = _endpoint(8)
    payload = b"\x01\x02\x03"
    os.write(w, MctpHeader(1, 8, 9, 0xC8).pack() + payload)
    binding.rx(r)
    assert len(received) == 1
    src, msg, tag_owner, tag, prv = received[0]
    assert src == 9
    assert msg == payload
    assert tag_owner is True
    assert prv.fd == r


def test_tx_writes_packet(pipe):
    r, w = pipe
    binding = AstI3cBinding()
    data = MctpHeader(1, 9, 8, 0xC0).pack() + b"\xaa\xbb"
    pkt = binding.alloc_packet(0)
    pkt.push(data)
    pkt.msg_binding_private.fd = w
    binding.tx(pkt)
    assert os.read(r, 100) == data


def test_round_trip_between_endpoints(pipe):
    r, w = pipe
    sender, sender_binding, _ = _endpoint(8)
    _, receiver_binding, received = _endpoint(9)
    sender_binding.set_tx_enabled(True)
    msg = bytes(range(10))
    sender.message_tx(9, msg, False, 0, AstI3cPktPrivate(fd=w))
    receiver_binding.rx(r)
    assert len(received) == 1
    assert received[0][0] == 8
    assert received[0][1] == msg


def test_tx_invalid_fd():
    binding = AstI3cBinding()
    pkt = binding.alloc_packet(MCTP_HEADER_SIZE)
    with pytest.raises(MctpError):
        binding.tx(pkt)


def test_rx_invalid_fd():
    _, binding, _ = _endpoint(8)
    with pytest.raises(MctpError):
        binding.rx(-1)


def test_rx_short_packet_rejected(pipe):
    r, w = pipe
    _, binding, received = _endpoint(8)
    os.write(w, b"\x01\x08\x09")
    with pytest.raises(MctpError):
        binding.rx(r)
    assert received == []


def test_rx_long_packet_rejected(pipe):
    r, w = pipe
    _, binding, received = _endpoint(8)
    os.write(w, bytes(MCTP_BTU + MCTP_HEADER_SIZE + 1))
    with pytest.raises(MctpError):
        binding.rx(r)
    assert received == []


def test_binding_identity():
    binding = AstI3cBinding()
    assert binding.name == "asti3c"
    assert binding.version == 1
    assert isinstance(binding.alloc_packet(0).msg_binding_private, AstI3cPktPrivate)


def test_poll_reports_readable(pipe):
    r, w = pipe
    idle = poll(r, 0)
    assert idle == 0
    os.write(w, b"x")
    ready = poll(r, 0)
    assert (ready & select.POLLIN) == select.POLLIN