import pytest

from mctp.astlpc import (
    KCS_STATUS_BMC_READY,
    KCS_STATUS_CHANNEL_ACTIVE,
    KCS_STATUS_IBF,
    KCS_STATUS_OBF,
    MCTP_MAGIC,
    AstLpcBinding,
    AstLpcOps,
    KcsReg,
    LpcMapHeader,
)
from mctp.core import Mctp
from mctp.packet import MCTP_BTU, MctpError, PacketBuffer

RX_BUFFER_DATA = 0x100 + 4 + 4
TX_BUFFER_DATA = 0x200

DATA = KcsReg.DATA
STATUS = KcsReg.STATUS


class MmioSim:
    def __init__(self, size=1 * 1024 * 1024):
        self.lpc = bytearray(size)
        self.kcs = bytearray(2)
        self.bmc = True

    def kcs_read(self, reg):
        val = self.kcs[reg]
        if reg == DATA:
            flag = KCS_STATUS_IBF if self.bmc else KCS_STATUS_OBF
            self.kcs[STATUS] &= ~flag & 0xFF
        return val

    def kcs_write(self, reg, val):
        if reg == DATA:
            self.kcs[STATUS] |= KCS_STATUS_OBF
        if reg == STATUS:
            self.kcs[reg] = val & ~0xA & 0xFF
        else:
            self.kcs[reg] = val

    def lpc_read(self, offset, length):
        assert offset >= 0 and offset + length < len(self.lpc)
        return bytes(self.lpc[offset : offset + length])

    def lpc_write(self, data, offset):
        assert offset >= 0 and offset + len(data) < len(self.lpc)
        self.lpc[offset : offset + len(data)] = data

    def ops(self):
        return AstLpcOps(
            kcs_read=self.kcs_read,
            kcs_write=self.kcs_write,
            lpc_read=self.lpc_read,
            lpc_write=self.lpc_write,
        )


@pytest.fixture
def setup():
    sim = MmioSim()
    mctp = Mctp()
    received = []
    mctp.set_rx_all(lambda src, msg, to, tag, prv: received.append(msg))
    astlpc = AstLpcBinding(sim.ops())
    mctp.register_bus(astlpc, 8)
    return sim, mctp, astlpc, received


def _host_init(sim, astlpc):
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x00
    astlpc.poll()


def test_full_scenario(setup):
    sim, mctp, astlpc, received = setup
    msg = b"\x5a" * MCTP_BTU + b"\xa5" * MCTP_BTU

    assert sim.kcs[STATUS] & KCS_STATUS_BMC_READY

    _host_init(sim, astlpc)
    assert sim.kcs[STATUS] & KCS_STATUS_OBF
    assert sim.kcs[STATUS] & KCS_STATUS_CHANNEL_ACTIVE
    assert sim.kcs[DATA] == 0xFF
    sim.kcs[STATUS] &= ~KCS_STATUS_OBF & 0xFF

    mctp.message_tx(9, msg, True, 0, None)
    assert sim.kcs[STATUS] & KCS_STATUS_OBF
    assert sim.kcs[DATA] == 0x01
    assert sim.lpc[RX_BUFFER_DATA : RX_BUFFER_DATA + MCTP_BTU] == msg[:MCTP_BTU]

    sim.kcs[STATUS] &= ~KCS_STATUS_OBF & 0xFF
    sim.kcs[DATA] = 0x02
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    astlpc.poll()

    assert sim.kcs[STATUS] & KCS_STATUS_OBF
    assert sim.kcs[DATA] == 0x01
    assert sim.lpc[RX_BUFFER_DATA : RX_BUFFER_DATA + MCTP_BTU] == msg[MCTP_BTU:]

    sim.bmc = False
    valid_packet = bytes(
        [0x00, 0x00, 0x00, 0x07, 0x01, 0x08, 0x09, 0xC8, 0x00, 0x81, 0x02]
    )
    sim.lpc[TX_BUFFER_DATA : TX_BUFFER_DATA + len(valid_packet)] = valid_packet
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x01
    astlpc.poll()
    assert len(received) == 1
    assert received[0] == bytes([0x00, 0x81, 0x02])

    invalid_packet = bytes([0x00, 0x00, 0x00, 0x03, 0x01, 0x08, 0x09])
    sim.lpc[TX_BUFFER_DATA : TX_BUFFER_DATA + len(invalid_packet)] = invalid_packet
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x01
    astlpc.poll()
    assert len(received) == 1


def test_start_writes_header_indirect(setup):
    sim, _, astlpc, _ = setup
    assert sim.lpc[0:4] == b"MCTP"
    assert sim.lpc[16:20] == (0x100).to_bytes(4, "big")
    assert sim.lpc[24:28] == (0x200).to_bytes(4, "big")
    assert astlpc.priv_hdr.magic == MCTP_MAGIC


def test_start_writes_header_direct():
    sim = MmioSim()
    window = bytearray(0x400)
    ops = AstLpcOps(kcs_read=sim.kcs_read, kcs_write=sim.kcs_write)
    astlpc = AstLpcBinding(ops, lpc_map=window)
    Mctp().register_bus(astlpc, 8)
    assert window[0:4] == b"MCTP"
    assert window[20:24] == (0x100).to_bytes(4, "big")
    assert sim.kcs[STATUS] & KCS_STATUS_BMC_READY
    assert astlpc.priv_hdr is None


def test_direct_mode_transmit():
    sim = MmioSim()
    window = bytearray(0x400)
    ops = AstLpcOps(kcs_read=sim.kcs_read, kcs_write=sim.kcs_write)
    astlpc = AstLpcBinding(ops, lpc_map=window)
    mctp = Mctp()
    mctp.register_bus(astlpc, 8)
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x00
    astlpc.poll()
    assert window[12:14] == b"\x00\x01"
    sim.kcs[STATUS] &= ~KCS_STATUS_OBF & 0xFF

    msg = b"\x11\x22\x33"
    mctp.message_tx(9, msg)
    assert window[0x100:0x104] == (7).to_bytes(4, "big")
    assert window[RX_BUFFER_DATA : RX_BUFFER_DATA + 3] == msg
    assert sim.kcs[DATA] == 0x01


def test_init_sets_negotiated_version_indirect(setup):
    sim, _, astlpc, _ = setup
    _host_init(sim, astlpc)
    assert sim.lpc[12:14] == b"\x00\x01"


def test_poll_without_ibf_does_nothing(setup):
    sim, _, astlpc, received = setup
    sim.kcs[DATA] = 0x01
    before = bytes(sim.kcs)
    astlpc.poll()
    assert bytes(sim.kcs) == before
    assert received == []


def test_unknown_message_ignored(setup):
    sim, _, astlpc, received = setup
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x55
    astlpc.poll()
    assert received == []
    assert not sim.kcs[STATUS] & KCS_STATUS_IBF


def test_tx_too_long_rejected(setup):
    _, _, astlpc, _ = setup
    pkt = PacketBuffer(300, 0, 256)
    with pytest.raises(MctpError):
        astlpc.tx(pkt)


def test_oversized_rx_discarded(setup):
    sim, _, astlpc, received = setup
    sim.bmc = False
    sim.lpc[TX_BUFFER_DATA : TX_BUFFER_DATA + 4] = (0x100).to_bytes(4, "big")
    sim.kcs[STATUS] |= KCS_STATUS_IBF
    sim.kcs[DATA] = 0x01
    astlpc.poll()
    assert received == []


def test_poll_kcs_read_failure():
    def failing(reg):
        raise MctpError("read failed")

    astlpc = AstLpcBinding(AstLpcOps(kcs_read=failing))
    with pytest.raises(MctpError):
        astlpc.poll()


def test_start_kcs_write_failure():
    sim = MmioSim()

    def failing(reg, val):
        raise MctpError("write failed")

    ops = AstLpcOps(
        kcs_read=sim.kcs_read, kcs_write=failing, lpc_write=sim.lpc_write
    )
    with pytest.raises(MctpError):
        Mctp().register_bus(AstLpcBinding(ops), 8)


def test_missing_ops_raise():
    ops = AstLpcOps()
    with pytest.raises(MctpError):
        ops.kcs_read(KcsReg.STATUS)
    with pytest.raises(MctpError):
        ops.lpc_write(b"\x00", 0)


def test_lpc_map_header_pack():
    hdr = LpcMapHeader(magic=MCTP_MAGIC, rx_offset=0x100, tx_offset=0x200)
    packed = hdr.pack()
    assert len(packed) == 32
    assert packed[0:4] == b"MCTP"
    assert packed[16:20] == (0x100).to_bytes(4, "big")
    assert packed[24:28] == (0x200).to_bytes(4, "big")