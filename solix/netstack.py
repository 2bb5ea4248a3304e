"""A small network stack: devices, ARP cache, IPv4, ICMP echo, TCP and UDP sockets.

Devices hand finished Ethernet frames to their ``transmit`` callable.
Frames coming in are fed to :meth:`NetworkStack.eth_receive`.
"""

from __future__ import annotations

import contextlib
import logging
import struct
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from solix.inet import (
    ARP_HDR_SIZE,
    ARP_REPLY,
    ARP_REQUEST,
    BROADCAST_IP,
    BROADCAST_MAC,
    ETH_ALEN,
    ETH_HDR_SIZE,
    ETH_P_ARP,
    ETH_P_IP,
    ICMP_ECHO_REPLY,
    ICMP_ECHO_REQUEST,
    ICMP_HDR_SIZE,
    IP_ADDR_LEN,
    IP_HDR_SIZE,
    IPPROTO_ICMP,
    IPPROTO_TCP,
    IPPROTO_UDP,
    TCP_FLAG_ACK,
    TCP_FLAG_SYN,
    TCP_HDR_SIZE,
    TCP_MAX_WINDOW,
    UDP_HDR_SIZE,
    ArpHeader,
    EthHeader,
    IcmpHeader,
    IpHeader,
    TcpHeader,
    UdpHeader,
    checksum,
    ip_ntoa,
)

logger = logging.getLogger(__name__)

MAX_DEVICES = 16
MAX_SOCKETS = 256
ARP_CACHE_SIZE = 64
DEFAULT_TTL = 64

SOCK_STREAM = 1
SOCK_DGRAM = 2

TCP_CLOSED = 0
TCP_SYN_RECEIVED = 1
TCP_ESTABLISHED = 2

_MASK32 = 0xFFFFFFFF
_TIMESTAMP = struct.Struct("<I")

Clock = Callable[[], int]


def _default_ticks() -> int:
    """Timer ticks at 100 Hz."""
    return (time.monotonic_ns() // 10_000_000) & _MASK32


class NetError(Exception):
    """Raised when a packet cannot be sent or a table is full."""


@dataclass(eq=False)
class NetDevice:
    """A network interface; ``transmit`` receives each outgoing frame."""

    name: str
    mac: bytes
    ip_addr: int = 0
    netmask: int = 0
    gateway: int = 0
    up: bool = True
    transmit: Optional[Callable[[bytes], object]] = None

    def __post_init__(self) -> None:
        self.mac = bytes(self.mac)
        if len(self.mac) != ETH_ALEN:
            raise ValueError(f"mac must be {ETH_ALEN} bytes, got {len(self.mac)}")


@dataclass(eq=False)
class Socket:
    """An endpoint bound to a local port."""

    sock_type: int = SOCK_STREAM
    protocol: int = IPPROTO_TCP
    local_ip: int = 0
    local_port: int = 0
    remote_ip: int = 0
    remote_port: int = 0
    state: int = TCP_CLOSED
    received: Deque[bytes] = field(default_factory=deque)


@dataclass
class _ArpEntry:
    mac: bytes
    timestamp: int


class ArpCache:
    """IP to MAC mapping with a fixed number of slots."""

    def __init__(self, capacity: int = ARP_CACHE_SIZE, clock: Optional[Clock] = None) -> None:
        self.capacity = capacity
        self._clock = clock or _default_ticks
        self._entries: Dict[int, _ArpEntry] = {}

    def add(self, ip: int, mac: bytes) -> None:
        """Record or refresh ``ip``; new entries are dropped when the cache is full."""
        mac = bytes(mac)
        if len(mac) != ETH_ALEN:
            raise ValueError(f"mac must be {ETH_ALEN} bytes, got {len(mac)}")
        entry = self._entries.get(ip)
        if entry is not None:
            entry.mac = mac
            entry.timestamp = self._clock()
        elif len(self._entries) < self.capacity:
            self._entries[ip] = _ArpEntry(mac, self._clock())

    def lookup(self, ip: int) -> Optional[bytes]:
        """MAC address for ``ip``, or ``None`` if unknown."""
        entry = self._entries.get(ip)
        return entry.mac if entry is not None else None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ip: object) -> bool:
        return ip in self._entries


class NetworkStack:
    """Device table, sockets and protocol handling."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _default_ticks
        self.devices: List[NetDevice] = []
        self.sockets: List[Socket] = []
        self.arp_cache = ArpCache(clock=self._clock)
        self.ping_times: List[int] = []
        logger.info("Network stack initialized")

    # Device table

    def register_device(self, device: NetDevice) -> None:
        if len(self.devices) >= MAX_DEVICES:
            raise NetError("device table is full")
        self.devices.append(device)
        logger.info("Registered network device: %s", device.name)

    def unregister_device(self, device: NetDevice) -> None:
        """Remove ``device``; the last device takes its slot."""
        for index, known in enumerate(self.devices):
            if known is device:
                last = self.devices.pop()
                if index < len(self.devices):
                    self.devices[index] = last
                return
        raise NetError(f"device {device.name!r} is not registered")

    def get_device(self, name: str) -> Optional[NetDevice]:
        return next((dev for dev in self.devices if dev.name == name), None)

    def add_socket(self, socket: Socket) -> Socket:
        if len(self.sockets) >= MAX_SOCKETS:
            raise NetError("socket table is full")
        self.sockets.append(socket)
        return socket

    def _first_up_device(self) -> NetDevice:
        for dev in self.devices:
            if dev.up:
                return dev
        raise NetError("no network device is up")

    def _find_socket(self, port: int, protocol: int) -> Optional[Socket]:
        return next(
            (s for s in self.sockets if s.local_port == port and s.protocol == protocol),
            None,
        )

    # Ethernet

    def eth_transmit(self, device: Optional[NetDevice], dest: bytes, eth_type: int,
                     payload: bytes) -> bytes:
        """Frame ``payload`` and hand it to the device; return the frame."""
        if device is None or device.transmit is None or not device.up:
            raise NetError("device cannot transmit")
        frame = EthHeader(bytes(dest), device.mac, eth_type).pack() + bytes(payload)
        device.transmit(frame)
        return frame

    def eth_receive(self, device: NetDevice, frame: bytes) -> None:
        if len(frame) < ETH_HDR_SIZE:
            return
        header = EthHeader.unpack(frame)
        if header.dest not in (device.mac, BROADCAST_MAC):
            return
        payload = bytes(frame[ETH_HDR_SIZE:])
        if header.eth_type == ETH_P_IP:
            self.ip_receive(device, payload)
        elif header.eth_type == ETH_P_ARP:
            self.arp_receive(device, payload)

    # IPv4

    def ip_transmit(self, src: int, dest: int, protocol: int, payload: bytes) -> bytes:
        """Send an IPv4 packet; raise NetError (after an ARP request) if ``dest`` is unresolved."""
        device = self._first_up_device()
        dest_mac = self.arp_cache.lookup(dest)
        if dest_mac is None:
            self.arp_request(dest)
            raise NetError(f"no ARP entry for {ip_ntoa(dest)}; request sent")
        payload = bytes(payload)
        header = IpHeader(
            version_ihl=0x45,
            tos=0,
            tot_len=(IP_HDR_SIZE + len(payload)) & 0xFFFF,
            id=1,
            frag_off=0,
            ttl=DEFAULT_TTL,
            protocol=protocol,
            check=0,
            saddr=src,
            daddr=dest,
        )
        header.check = checksum(header.pack())
        return self.eth_transmit(device, dest_mac, ETH_P_IP, header.pack() + payload)

    def ip_receive(self, device: NetDevice, packet: bytes) -> None:
        if len(packet) < IP_HDR_SIZE:
            return
        if checksum(packet[:IP_HDR_SIZE]) != 0:
            return
        header = IpHeader.unpack(packet)
        if header.daddr not in (device.ip_addr, BROADCAST_IP):
            return
        payload = bytes(packet[IP_HDR_SIZE:])
        if header.protocol == IPPROTO_ICMP:
            self.icmp_receive(device, payload, header.saddr)
        elif header.protocol == IPPROTO_TCP:
            self.tcp_receive_packet(device, payload, header.saddr)
        elif header.protocol == IPPROTO_UDP:
            self.udp_receive_packet(device, payload)

    # ARP

    def _arp_packet(self, device: NetDevice, oper: int, tha: bytes, tpa: int) -> bytes:
        return ArpHeader(
            htype=1,
            ptype=ETH_P_IP,
            hlen=ETH_ALEN,
            plen=IP_ADDR_LEN,
            oper=oper,
            sha=device.mac,
            spa=device.ip_addr,
            tha=tha,
            tpa=tpa,
        ).pack()

    def arp_request(self, target_ip: int) -> bytes:
        device = self._first_up_device()
        packet = self._arp_packet(device, ARP_REQUEST, bytes(ETH_ALEN), target_ip)
        return self.eth_transmit(device, BROADCAST_MAC, ETH_P_ARP, packet)

    def arp_reply(self, target_ip: int, target_mac: bytes) -> bytes:
        device = self._first_up_device()
        packet = self._arp_packet(device, ARP_REPLY, bytes(target_mac), target_ip)
        return self.eth_transmit(device, target_mac, ETH_P_ARP, packet)

    def arp_receive(self, device: NetDevice, packet: bytes) -> None:
        if len(packet) < ARP_HDR_SIZE:
            return
        arp = ArpHeader.unpack(packet)
        if arp.htype != 1 or arp.ptype != ETH_P_IP:
            return
        self.arp_cache.add(arp.spa, arp.sha)
        if arp.oper == ARP_REQUEST and arp.tpa == device.ip_addr:
            self.arp_reply(arp.spa, arp.sha)

    # ICMP

    def icmp_ping(self, target_ip: int) -> bytes:
        """Send an echo request stamped with the current tick count from eth0."""
        device = self.get_device("eth0")
        if device is None:
            raise NetError("no eth0 device")
        body = IcmpHeader(ICMP_ECHO_REQUEST, 0, 0, 0).pack() + _TIMESTAMP.pack(
            self._clock() & _MASK32
        )
        packet = bytearray(body)
        packet[2:4] = checksum(packet).to_bytes(2, "big")
        return self.ip_transmit(device.ip_addr, target_ip, IPPROTO_ICMP, bytes(packet))

    def icmp_receive(self, device: NetDevice, packet: bytes, source_ip: int) -> None:
        if len(packet) < ICMP_HDR_SIZE:
            return
        icmp = IcmpHeader.unpack(packet)
        if icmp.icmp_type == ICMP_ECHO_REQUEST:
            reply = bytearray(packet)
            reply[0] = ICMP_ECHO_REPLY
            reply[2:4] = b"\x00\x00"
            reply[2:4] = checksum(reply).to_bytes(2, "big")
            with contextlib.suppress(NetError):
                self.ip_transmit(device.ip_addr, source_ip, IPPROTO_ICMP, bytes(reply))
        elif icmp.icmp_type == ICMP_ECHO_REPLY:
            if len(packet) < ICMP_HDR_SIZE + _TIMESTAMP.size:
                return
            (stamp,) = _TIMESTAMP.unpack_from(packet, ICMP_HDR_SIZE)
            elapsed = (self._clock() - stamp) & _MASK32
            self.ping_times.append(elapsed)
            logger.info("Ping reply received, time: %d ms", elapsed)

    # TCP / UDP

    def tcp_receive_packet(self, device: NetDevice, segment: bytes, source_ip: int) -> None:
        if len(segment) < TCP_HDR_SIZE:
            return
        tcp = TcpHeader.unpack(segment)
        sock = self._find_socket(tcp.dest, IPPROTO_TCP)
        if sock is None:
            return
        if tcp.flags & TCP_FLAG_SYN:
            reply = TcpHeader(
                source=sock.local_port,
                dest=tcp.source,
                seq=0,
                ack_seq=(tcp.seq + 1) & _MASK32,
                data_off=5 << 4,
                flags=TCP_FLAG_SYN | TCP_FLAG_ACK,
                window=TCP_MAX_WINDOW,
                check=0,
                urg_ptr=0,
            )
            with contextlib.suppress(NetError):
                self.ip_transmit(device.ip_addr, source_ip, IPPROTO_TCP, reply.pack())
            sock.state = TCP_SYN_RECEIVED
        elif tcp.flags & TCP_FLAG_ACK:
            sock.state = TCP_ESTABLISHED

    def udp_receive_packet(self, device: NetDevice, datagram: bytes) -> None:
        if len(datagram) < UDP_HDR_SIZE:
            return
        udp = UdpHeader.unpack(datagram)
        sock = self._find_socket(udp.dest, IPPROTO_UDP)
        if sock is None:
            return
        sock.received.append(bytes(datagram[UDP_HDR_SIZE:]))