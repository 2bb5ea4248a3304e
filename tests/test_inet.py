import ipaddress

import pytest

from solix.inet import (
    ARP_HDR_SIZE,
    ARP_REPLY,
    ETH_HDR_SIZE,
    ETH_P_ARP,
    ICMP_HDR_SIZE,
    IP_HDR_SIZE,
    IPPROTO_UDP,
    TCP_FLAG_ACK,
    TCP_FLAG_SYN,
    TCP_HDR_SIZE,
    UDP_HDR_SIZE,
    ArpHeader,
    EthHeader,
    IcmpHeader,
    IpHeader,
    TcpHeader,
    UdpHeader,
    checksum,
    htonl,
    htons,
    ip_aton,
    ip_ntoa,
    ntohl,
    ntohs,
)

MAC_A = b"\x02\x00\x00\x00\x00\x01"
MAC_B = b"\x02\x00\x00\x00\x00\x02"

SAMPLE_IP_HEADER = bytes.fromhex("450000730000400040110000c0a80001c0a800c7")


def test_checksum_worked_example():
    assert checksum(SAMPLE_IP_HEADER) == 0xB861


def test_checksum_of_filled_header_is_zero():
    value = checksum(SAMPLE_IP_HEADER)
    filled = SAMPLE_IP_HEADER[:10] + value.to_bytes(2, "big") + SAMPLE_IP_HEADER[12:]
    assert checksum(filled) == 0


def test_checksum_odd_length_pads_with_zero():
    assert checksum(b"\x12\x34\x56") == checksum(b"\x12\x34\x56\x00")


def test_checksum_of_empty_data():
    assert checksum(b"") == 0xFFFF


@pytest.mark.parametrize("text", ["192.168.0.1", "10.0.0.255", "0.0.0.0", "255.255.255.255"])
def test_ip_aton_matches_standard_parsing(text):
    assert ip_aton(text) == int(ipaddress.IPv4Address(text))


@pytest.mark.parametrize("text", ["172.16.5.4", "1.2.3.4", "8.8.4.4"])
def test_ip_round_trip(text):
    assert ip_ntoa(ip_aton(text)) == text


def test_ip_aton_skips_other_characters():
    assert ip_aton(" 1.2.3.4x") == ip_aton("1.2.3.4")


def test_ip_ntoa_of_standard_value():
    value = int(ipaddress.IPv4Address("10.20.30.40"))
    assert ip_ntoa(value) == "10.20.30.40"


def test_byte_swaps():
    assert htons(0x1234) == 0x3412
    assert htonl(0x12345678) == 0x78563412


@pytest.mark.parametrize("value", [0, 1, 0x00FF, 0xABCD, 0xFFFF])
def test_short_swap_round_trip(value):
    assert ntohs(htons(value)) == value


@pytest.mark.parametrize("value", [0, 1, 0xDEADBEEF, 0xFFFFFFFF])
def test_long_swap_round_trip(value):
    assert ntohl(htonl(value)) == value


def test_eth_header_round_trip_and_size():
    header = EthHeader(MAC_B, MAC_A, ETH_P_ARP)
    raw = header.pack()
    assert len(raw) == ETH_HDR_SIZE
    assert raw[:6] == MAC_B
    assert raw[6:12] == MAC_A
    assert raw[12:14] == ETH_P_ARP.to_bytes(2, "big")
    assert EthHeader.unpack(raw) == header


def test_eth_header_rejects_bad_mac():
    with pytest.raises(ValueError):
        EthHeader(b"\x01\x02", MAC_A, ETH_P_ARP)


def test_ip_header_unpacks_sample():
    header = IpHeader.unpack(SAMPLE_IP_HEADER)
    assert header.version_ihl == 0x45
    assert header.protocol == IPPROTO_UDP
    assert header.saddr == ip_aton("192.168.0.1")
    assert header.daddr == ip_aton("192.168.0.199")
    assert header.pack() == SAMPLE_IP_HEADER


def test_ip_header_round_trip_size():
    header = IpHeader(tot_len=40, id=7, protocol=IPPROTO_UDP, saddr=1, daddr=2)
    raw = header.pack()
    assert len(raw) == IP_HDR_SIZE
    assert IpHeader.unpack(raw) == header


def test_tcp_header_round_trip_and_port_order():
    header = TcpHeader(source=0x1234, dest=80, seq=5, ack_seq=6,
                       flags=TCP_FLAG_SYN | TCP_FLAG_ACK, window=1024)
    raw = header.pack()
    assert len(raw) == TCP_HDR_SIZE
    assert raw[:2] == b"\x12\x34"
    assert TcpHeader.unpack(raw) == header


def test_udp_header_round_trip():
    header = UdpHeader(source=53, dest=1053, length=UDP_HDR_SIZE + 4)
    raw = header.pack()
    assert len(raw) == UDP_HDR_SIZE
    assert UdpHeader.unpack(raw) == header


def test_icmp_header_round_trip():
    header = IcmpHeader(icmp_type=8, code=0, check=0xBEEF, unused=3)
    raw = header.pack()
    assert len(raw) == ICMP_HDR_SIZE
    assert raw[0] == 8
    assert IcmpHeader.unpack(raw) == header


def test_arp_header_round_trip():
    header = ArpHeader(oper=ARP_REPLY, sha=MAC_A, spa=ip_aton("10.0.0.1"),
                       tha=MAC_B, tpa=ip_aton("10.0.0.2"))
    raw = header.pack()
    assert len(raw) == ARP_HDR_SIZE
    assert ArpHeader.unpack(raw) == header


def test_arp_header_rejects_bad_mac():
    with pytest.raises(ValueError):
        ArpHeader(sha=b"\x00" * 7)


@pytest.mark.parametrize("cls", [EthHeader, IpHeader, TcpHeader, UdpHeader, IcmpHeader, ArpHeader])
def test_unpack_short_data_raises(cls):
    with pytest.raises(ValueError):
        cls.unpack(b"\x00\x01\x02")


def test_unpack_ignores_trailing_payload():
    raw = UdpHeader(source=1, dest=2).pack() + b"payload"
    assert UdpHeader.unpack(raw) == UdpHeader(source=1, dest=2)