"""
HID over UDP, for software authenticators listening on localhost. Once
TestDevice.set_sim(True) has called force_udp_backend(), fido2's
CtapHidDevice.list_devices() finds the simulation instead of USB devices.
"""

import socket

import fido2.hid
from fido2.hid.base import CtapHidConnection, HidDescriptor

SIM_ADDRESS = ("localhost", 8111)
LOCAL_ADDRESS = ("127.0.0.1", 7112)
PACKET_SIZE = 64
READ_TIMEOUT = 1.0


def parse_path(path):
    host, port = path.rsplit(":", 1)
    return host, int(port)


def sim_descriptor(path="%s:%d" % SIM_ADDRESS):
    return HidDescriptor(
        path, 0x1234, 0x5678, PACKET_SIZE, PACKET_SIZE, "software authenticator", "0"
    )


class HidOverUDP(CtapHidConnection):
    """One HID report per datagram, exchanged with the address in the path."""

    def __init__(self, descriptor, local_address=LOCAL_ADDRESS):
        self.descriptor = descriptor
        self.peer = parse_path(descriptor.path)
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(local_address)
        self.sock.settimeout(READ_TIMEOUT)

    def close(self):
        self.sock.close()

    def write_packet(self, packet):
        self.sock.sendto(packet, self.peer)

    def read_packet(self):
        packet, _ = self.sock.recvfrom(self.descriptor.report_size_in)
        return packet


def force_udp_backend(address=SIM_ADDRESS):
    path = "%s:%d" % address
    fido2.hid.open_connection = HidOverUDP
    fido2.hid.get_descriptor = sim_descriptor
    fido2.hid.list_descriptors = lambda: [sim_descriptor(path)]
