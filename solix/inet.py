"""Wire formats and helpers for Ethernet, IPv4, ARP, ICMP, TCP and UDP.

Header fields are held in host order as plain integers; ``pack`` writes
them in network byte order and ``unpack`` reads them back.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, fields
from typing import ClassVar

ETH_ALEN = 6
ETH_HDR_SIZE = 14
ETH_MTU = 1500

ETH_P_IP = 0x0800
ETH_P_ARP = 0x0806

IP_HDR_SIZE = 20
IP_ADDR_LEN = 4

IPPROTO_ICMP = 1
IPPROTO_TCP = 6
IPPROTO_UDP = 17

TCP_HDR_SIZE = 20
TCP_MAX_WINDOW = 65535

TCP_FLAG_FIN = 0x01
TCP_FLAG_SYN = 0x02
TCP_FLAG_RST = 0x04
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10
TCP_FLAG_URG = 0x20

UDP_HDR_SIZE = 8
ICMP_HDR_SIZE = 8

ARP_HDR_SIZE = 28
ARP_REQUEST = 1
ARP_REPLY = 2

ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8

BROADCAST_MAC = b"\xff" * ETH_ALEN
BROADCAST_IP = 0xFFFFFFFF

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF


def checksum(data: bytes) -> int:
    """Internet one's-complement checksum of ``data``.

    The result, packed in network order over the checksum field, makes the
    checksum of the whole block zero.
    """
    raw = bytes(data)
    if len(raw) % 2:
        raw += b"\x00"
    total = sum(struct.unpack(f"!{len(raw) // 2}H", raw))
    while total >> 16:
        total = (total & _MASK16) + (total >> 16)
    return ~total & _MASK16


def ip_aton(text: str) -> int:
    """Parse a dotted-quad address; characters other than digits and dots are skipped."""
    ip = 0
    octet = 0
    for ch in text:
        if ch == ".":
            ip = ((ip << 8) | octet) & _MASK32
            octet = 0
        elif "0" <= ch <= "9":
            octet = octet * 10 + (ord(ch) - ord("0"))
    return ((ip << 8) | octet) & _MASK32


def ip_ntoa(ip: int) -> str:
    """Format a 32-bit address as a dotted quad."""
    return ".".join(str((ip >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def htons(value: int) -> int:
    """Swap the bytes of a 16-bit value."""
    return ((value & 0xFF) << 8) | ((value >> 8) & 0xFF)


def ntohs(value: int) -> int:
    """Swap the bytes of a 16-bit value."""
    return htons(value)


def htonl(value: int) -> int:
    """Swap the bytes of a 32-bit value."""
    return (
        ((value & 0xFF) << 24)
        | ((value & 0xFF00) << 8)
        | ((value >> 8) & 0xFF00)
        | ((value >> 24) & 0xFF)
    )


def ntohl(value: int) -> int:
    """Swap the bytes of a 32-bit value."""
    return htonl(value)


def _mac(value: bytes, field: str) -> bytes:
    mac = bytes(value)
    if len(mac) != ETH_ALEN:
        raise ValueError(f"{field} must be {ETH_ALEN} bytes, got {len(mac)}")
    return mac


def _pack(header, fmt: struct.Struct) -> bytes:
    return fmt.pack(*(getattr(header, f.name) for f in fields(header)))


def _unpack(cls, fmt: struct.Struct, data: bytes):
    if len(data) < fmt.size:
        raise ValueError(f"{cls.__name__} needs {fmt.size} bytes, got {len(data)}")
    return cls(*fmt.unpack_from(bytes(data)))


@dataclass
class EthHeader:
    dest: bytes = BROADCAST_MAC
    src: bytes = bytes(ETH_ALEN)
    eth_type: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!6s6sH")

    def __post_init__(self) -> None:
        self.dest = _mac(self.dest, "dest")
        self.src = _mac(self.src, "src")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> EthHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)


@dataclass
class IpHeader:
    version_ihl: int = 0x45
    tos: int = 0
    tot_len: int = IP_HDR_SIZE
    id: int = 0
    frag_off: int = 0
    ttl: int = 64
    protocol: int = 0
    check: int = 0
    saddr: int = 0
    daddr: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!BBHHHBBHII")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> IpHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)


@dataclass
class TcpHeader:
    source: int = 0
    dest: int = 0
    seq: int = 0
    ack_seq: int = 0
    data_off: int = 5 << 4
    flags: int = 0
    window: int = 0
    check: int = 0
    urg_ptr: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!HHIIBBHHH")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> TcpHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)


@dataclass
class UdpHeader:
    source: int = 0
    dest: int = 0
    length: int = UDP_HDR_SIZE
    check: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!HHHH")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> UdpHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)


@dataclass
class IcmpHeader:
    icmp_type: int = 0
    code: int = 0
    check: int = 0
    unused: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!BBHI")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> IcmpHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)


@dataclass
class ArpHeader:
    htype: int = 1
    ptype: int = ETH_P_IP
    hlen: int = ETH_ALEN
    plen: int = IP_ADDR_LEN
    oper: int = ARP_REQUEST
    sha: bytes = bytes(ETH_ALEN)
    spa: int = 0
    tha: bytes = bytes(ETH_ALEN)
    tpa: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("!HHBBH6sI6sI")

    def __post_init__(self) -> None:
        self.sha = _mac(self.sha, "sha")
        self.tha = _mac(self.tha, "tha")

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _pack(self, self._FORMAT)

    @classmethod
    def unpack(cls, data: bytes) -> ArpHeader:
        """Decode a header from the start of ``data``."""
        return _unpack(cls, cls._FORMAT, data)