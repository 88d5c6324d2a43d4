# mctp

A Python library for the Management Component Transport Protocol (MCTP):
packet headers and buffers, splitting messages into packets and putting them
back together, control-message encoding, and bindings for the ASPEED LPC/KCS
channel, PCIe vendor-defined messages and I3C device files.

It has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `mctp.packet`: `MctpHeader` (the four-byte transport header, with `pack`
  and `from_bytes`), `PacketBuffer` (a packet with headroom for binding
  framing), and the exceptions `MctpError` and `TxDisabledError`.
- `mctp.cmds`: control-message structures (`CtrlMsgHdr`, `SetEidRequest`,
  `SetEidResponse`, `GetEidResponse`, `GetUuidResponse`,
  `GetVdmSupportResponse`, `RoutingTableEntry`), the `SetEidOp` and
  `AllocateEidsOp` enums, request encoders such as `encode_set_eid`,
  `encode_get_eid`, `encode_get_routing_table` and
  `encode_routing_information_update`, and the classifiers `is_ctrl_msg`,
  `ctrl_msg_is_request` and `ctrl_cmd_is_transport`. Encoders return `bytes`.
- `mctp.core`: the `Mctp` endpoint, the `Bus` objects it owns, and the
  `Binding` base class that transports derive from.
- `mctp.astlpc`: `AstLpcBinding`, the BMC side of the LPC binding. It reaches
  the KCS registers through an `AstLpcOps` object you supply, and the LPC
  window either through a buffer you pass as `lpc_map` or through the
  `lpc_read`/`lpc_write` operations.
- `mctp.astpcie`: `AstPcieBinding` on top of `AspeedMctpDevice`, which wraps
  the `/dev/aspeed-mctp` character device and its ioctls; `PcieHeader` packs
  and parses the PCIe VDM header.
- `mctp.asti3c`: `AstI3cBinding`, which reads and writes whole packets on an
  I3C device file descriptor, and a `poll(fd, timeout)` helper.
- `mctp.log`: log sinks (`set_log_stdio`, `set_log_syslog`,
  `set_log_custom`) and hex tracing of packets (`set_tracing_enabled`).

## Example

A binding only has to supply `tx`. Here two endpoints are wired back to back;
a 100-byte message is split into packets on one side and reassembled on the
other.

```python
from mctp.core import Binding, Mctp


class Wire(Binding):
    def __init__(self):
        super().__init__(name="wire", version=1)
        self.peer = None

    def tx(self, pkt):
        rx = self.peer.alloc_packet(0)
        rx.push(bytes(pkt.data[pkt.start:pkt.end]))
        self.peer.bus_rx(rx)


a, b = Wire(), Wire()
a.peer, b.peer = b, a

sender, receiver = Mctp(), Mctp()
sender.register_bus(a, 8)
receiver.register_bus(b, 9)
a.set_tx_enabled(True)
b.set_tx_enabled(True)

receiver.set_rx_all(lambda src, msg, tag_owner, tag, private: print(src, len(msg)))
sender.message_tx(9, b"\x01" + bytes(99), True, 0)
# prints: 8 100
```

`message_tx` returns `False` when packets are held in the queue because
transmission is disabled; they are sent once the binding calls
`set_tx_enabled(True)`. Failures raise `MctpError`.

Control requests addressed to the endpoint go to the callback set with
`Mctp.set_rx_ctrl`, or to the binding's `control_rx` when the command code is
transport-specific (0xF0 to 0xFF). If no handler takes them they reach the
`set_rx_all` callback like any other message. `Mctp.ctrl_cmd_set_endpoint_id`,
`ctrl_cmd_get_endpoint_id`, `ctrl_cmd_get_endpoint_uuid` and
`ctrl_cmd_get_vdm_support` build the matching responses.

## What it does not do

- It is a library only; there is no command-line program and no daemon.
- An `Mctp` carries either one bus, or two bridged busses that forward
  everything to each other. Messages always go out on the first bus; there is
  no routing table.
- `AstLpcBinding` does not open or map the LPC and KCS device files itself;
  the caller provides the register and window access.
- There is no serial binding.