import pytest

from mctp import cmds
from mctp.cmds import (
    AllocateEidsOp,
    CtrlMsgHdr,
    GetEidResponse,
    GetUuidResponse,
    GetVdmSupportResponse,
    RoutingTableEntry,
    SetEidOp,
    SetEidRequest,
    SetEidResponse,
)
from mctp.packet import MctpError

INSTANCE = 0x05 | cmds.MCTP_CTRL_HDR_FLAG_REQUEST


def _check_header(data, command_code):
    hdr = CtrlMsgHdr.from_bytes(data)
    assert hdr.command_code == command_code
    assert hdr.rq_dgram_inst == INSTANCE
    assert hdr.ic_msg_type == cmds.MCTP_CTRL_HDR_MSG_TYPE


@pytest.mark.parametrize("eid", [9, 1])
def test_encode_set_eid(eid):
    data = cmds.encode_set_eid(INSTANCE, SetEidOp.SET_EID, eid)
    _check_header(data, cmds.MCTP_CTRL_CMD_SET_ENDPOINT_ID)
    req = SetEidRequest.from_bytes(data)
    assert req.eid == eid
    assert req.operation == SetEidOp.SET_EID


def test_encode_set_eid_bytes():
    assert cmds.encode_set_eid(INSTANCE, SetEidOp.FORCE_EID, 9) == b"\x00\x85\x01\x01\x09"


def test_encode_get_eid():
    data = cmds.encode_get_eid(INSTANCE)
    _check_header(data, cmds.MCTP_CTRL_CMD_GET_ENDPOINT_ID)
    assert data == b"\x00\x85\x02"


def test_encode_get_uuid():
    _check_header(cmds.encode_get_uuid(INSTANCE), cmds.MCTP_CTRL_CMD_GET_ENDPOINT_UUID)


def test_encode_get_ver_support():
    data = cmds.encode_get_ver_support(INSTANCE, cmds.MCTP_CTRL_HDR_MSG_TYPE)
    _check_header(data, cmds.MCTP_CTRL_CMD_GET_VERSION_SUPPORT)
    assert data[3] == cmds.MCTP_CTRL_HDR_MSG_TYPE


def test_encode_get_msg_type_support():
    _check_header(
        cmds.encode_get_msg_type_support(INSTANCE),
        cmds.MCTP_CTRL_CMD_GET_MESSAGE_TYPE_SUPPORT,
    )


def test_encode_get_vdm_support():
    data = cmds.encode_get_vdm_support(INSTANCE, 5)
    _check_header(data, cmds.MCTP_CTRL_CMD_GET_VENDOR_MESSAGE_SUPPORT)
    assert data[3] == 5


def test_encode_discovery_notify():
    _check_header(
        cmds.encode_discovery_notify(INSTANCE), cmds.MCTP_CTRL_CMD_DISCOVERY_NOTIFY
    )


def test_encode_get_routing_table():
    data = cmds.encode_get_routing_table(INSTANCE, 10)
    _check_header(data, cmds.MCTP_CTRL_CMD_GET_ROUTING_TABLE_ENTRIES)
    assert data[3] == 10


def test_encode_get_ver_support_rejects_bad_instance():
    with pytest.raises(ValueError):
        cmds.encode_get_ver_support(0x100, cmds.MCTP_CTRL_HDR_MSG_TYPE)


def test_encode_allocate_eids():
    data = cmds.encode_allocate_eids(INSTANCE, AllocateEidsOp.FORCE_ALLOCATION, 4, 20)
    _check_header(data, cmds.MCTP_CTRL_CMD_ALLOCATE_ENDPOINT_IDS)
    assert data[3:] == bytes((1, 4, 20))


def test_encode_query_hop():
    data = cmds.encode_query_hop(INSTANCE, 12, 0)
    _check_header(data, cmds.MCTP_CTRL_CMD_QUERY_HOP)
    assert data[3:] == bytes((12, 0))


def test_routing_information_update():
    entries = [
        RoutingTableEntry(2, 10, 0x40, cmds.MCTP_BINDING_PCIE, 0, b"\x01\x02"),
        RoutingTableEntry(1, 20, 0x00, cmds.MCTP_BINDING_SMBUS, 0, b"\x33"),
    ]
    data = cmds.encode_routing_information_update(INSTANCE, entries)
    _check_header(data, cmds.MCTP_CTRL_CMD_ROUTING_INFO_UPDATE)
    assert data[3] == 2
    assert data[4:] == bytes((0x40, 2, 10, 1, 2, 0x00, 1, 20, 0x33))
    assert len(data) == 4 + (3 + 2) + (3 + 1)


def test_routing_information_update_requires_entries():
    with pytest.raises(ValueError):
        cmds.encode_routing_information_update(INSTANCE, [])


def test_rsp_get_routing_table():
    entry = RoutingTableEntry(1, 9, 0x20, cmds.MCTP_BINDING_PCIE, 3, b"\xaa\xbb")
    data = cmds.encode_rsp_get_routing_table([entry, entry])
    assert data[3:6] == bytes((cmds.MCTP_CTRL_CC_SUCCESS, 0xFF, 2))
    assert data[6:14] == bytes((1, 9, 0x20, 2, 3, 2, 0xAA, 0xBB))
    assert len(data) == 6 + 2 * 8


def test_routing_entry_fields():
    entry = RoutingTableEntry(entry_type=(2 << 6) | (1 << 5) | 7)
    assert entry.routing_type == cmds.MCTP_ROUTING_ENTRY_BRIDGE
    assert entry.assignment_type == cmds.MCTP_STATIC_ASSIGNMENT
    assert entry.port == 7


def test_routing_entry_address_too_long():
    with pytest.raises(ValueError):
        RoutingTableEntry(phys_address=bytes(9))


def test_ctrl_hdr_round_trip():
    hdr = CtrlMsgHdr(0, 0x85, 0xF2)
    assert CtrlMsgHdr.from_bytes(hdr.pack()) == hdr
    assert hdr.instance_id == 5
    assert hdr.is_request is True


def test_ctrl_hdr_short():
    with pytest.raises(MctpError):
        CtrlMsgHdr.from_bytes(b"\x00\x80")


def test_is_ctrl_msg():
    assert cmds.is_ctrl_msg(b"\x00\x80\x02") is True
    assert cmds.is_ctrl_msg(b"\x01\x80\x02") is False
    assert cmds.is_ctrl_msg(b"\x00\x80") is False


def test_ctrl_msg_is_request():
    assert cmds.ctrl_msg_is_request(b"\x00\x80\x02") is True
    assert cmds.ctrl_msg_is_request(b"\x00\x00\x02") is False
    with pytest.raises(MctpError):
        cmds.ctrl_msg_is_request(b"\x00")


@pytest.mark.parametrize(
    "code, expected", [(0xF0, True), (0xF2, True), (0xFF, True), (0x02, False), (0x00, False)]
)
def test_ctrl_cmd_is_transport(code, expected):
    assert cmds.ctrl_cmd_is_transport(bytes((0, 0x80, code))) is expected


def test_set_eid_response_pack():
    resp = SetEidResponse(
        completion_code=cmds.MCTP_CTRL_CC_SUCCESS,
        status=cmds.MCTP_SET_EID_REJECTED << cmds.MCTP_EID_ASSIGNMENT_STATUS_SHIFT,
        eid_set=9,
    )
    assert resp.pack() == bytes((0, 0, 0, 0, 0x10, 9, 0))
    assert resp.assignment_status == cmds.MCTP_SET_EID_REJECTED


def test_get_eid_response_pack():
    resp = GetEidResponse(eid=8, eid_type=0x11, medium_data=0x9)
    assert resp.pack() == bytes((0, 0, 0, 0, 8, 0x11, 9))
    assert resp.endpoint_type == cmds.MCTP_BUS_OWNER_BRIDGE
    assert resp.endpoint_id_type == cmds.MCTP_STATIC_EID


def test_get_uuid_response_pack():
    uuid = bytes(range(16))
    assert GetUuidResponse(uuid=uuid).pack() == bytes(4) + uuid


def test_get_uuid_response_bad_length():
    with pytest.raises(ValueError):
        GetUuidResponse(uuid=b"\x00" * 15)


def test_get_vdm_support_response_pack():
    resp = GetVdmSupportResponse(
        vendor_id_set_selector=cmds.MCTP_GET_VDM_SUPPORT_NO_MORE_CAP_SET,
        vendor_id_data=0x8086,
    )
    assert resp.pack() == bytes((0, 0, 0, 0, 0xFF, 0, 0x86, 0x80, 0, 0))
    assert len(resp.pack()) == 10


def test_set_eid_request_short():
    with pytest.raises(MctpError):
        SetEidRequest.from_bytes(b"\x00\x80\x01\x00")