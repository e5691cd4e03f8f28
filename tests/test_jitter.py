import math

from rtcmedia.jitter import Depacketizer, JitterBuffer, RtpPacket

HEADER_BYTES = b"\xaa\xaa"
DEFAULT_PACKET_SIZE = 200


class _TestDepacketizer(Depacketizer):
    def unmarshal(self, payload):
        return payload

    def is_partition_head(self, payload):
        return payload[: len(HEADER_BYTES)] == HEADER_BYTES

    def is_partition_tail(self, marker, payload):
        return marker


def packet(sn, ts=0):
    return RtpPacket(sn & 0xFFFF, ts & 0xFFFFFFFF, False, bytes(DEFAULT_PACKET_SIZE))


def head_packet(sn, ts=0):
    payload = HEADER_BYTES + bytes(DEFAULT_PACKET_SIZE - len(HEADER_BYTES))
    return RtpPacket(sn & 0xFFFF, ts & 0xFFFFFFFF, False, payload)


def tail_packet(sn, ts=0):
    return RtpPacket(sn & 0xFFFF, ts & 0xFFFFFFFF, True, bytes(DEFAULT_PACKET_SIZE))


def test_jitter_buffer():
    calls = [0]

    def on_dropped():
        calls[0] += 1

    b = JitterBuffer(_TestDepacketizer(), 30, 1.0, on_packet_dropped=on_dropped)

    # out of order
    b.push(tail_packet(5, 31))
    assert len(b.pop(False)) == 0

    b.push(packet(3, 31))
    b.push(head_packet(6, 32))
    b.push(head_packet(1, 31))
    assert len(b.pop(False)) == 0

    b.push(packet(2, 31))
    b.push(packet(4, 31))

    pkts = b.pop(False)
    assert len(pkts) == 5
    assert [p.sequence_number for p in pkts] == [1, 2, 3, 4, 5]

    # push and pop (not empty)
    b.push(tail_packet(7, 32))
    assert len(b.pop(False)) == 2

    # push and pop (empty)
    b.push(head_packet(8, 33))
    b.push(tail_packet(9, 33))
    assert len(b.pop(False)) == 2

    # sn jump
    ts = 34
    for i in range(5000, 5058, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0

    b.push(head_packet(5058, ts))
    b.push(tail_packet(5059, ts))
    assert len(b.pop(False)) == 60

    # sn wrap
    for i in range(65478, 65536, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
    assert len(b.pop(False)) == 0

    b.push(head_packet(0, ts))
    b.push(tail_packet(1, ts))
    ts += 1
    assert len(b.pop(False)) == 60
    assert calls[0] == 0

    # dropped packets
    b.push(head_packet(2, ts))
    ts += 31
    b.push(head_packet(64, ts))
    b.push(tail_packet(65, ts))
    ts += 1

    assert len(b.pop(False)) == 0
    assert calls[0] == 1

    for i in range(66, 122, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0

    b.push(head_packet(122, ts))
    b.push(tail_packet(123, ts))

    assert len(b.pop(False)) == 60
    assert calls[0] == 2

    # ts wrap
    ts = 4294967280
    for i in range(15000, 15058, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0
    b.push(head_packet(15058, ts))
    b.push(tail_packet(15059, ts))
    ts += 1
    assert len(b.pop(False)) == 60

    # sn and ts jumps with drops
    b.push(tail_packet(15061, ts))
    b.push(head_packet(4000, 20000))
    b.push(tail_packet(4001, 20000))
    b.push(head_packet(15060, ts))
    b.push(head_packet(15062, ts + 1))
    b.push(tail_packet(4003, 20001))

    assert len(b.pop(False)) == 2

    ts = 20002
    for i in range(4004, 4062, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0

    b.push(head_packet(4062, ts))
    b.push(tail_packet(4063, ts))
    ts += 1

    assert len(b.pop(False)) == 2
    assert calls[0] == 3

    b.push(head_packet(4064, ts))
    b.push(tail_packet(4065, ts))
    ts += 1

    assert len(b.pop(False)) == 62
    assert calls[0] == 4

    # samples
    b.push(head_packet(4066, ts))
    b.push(tail_packet(4067, ts))
    ts += 1
    b.push(head_packet(4068, ts))
    b.push(tail_packet(4069, ts))
    ts += 1

    assert len(b.pop_samples(False)) == 2


def test_force_pop_returns_everything_in_order():
    b = JitterBuffer(_TestDepacketizer(), 30, 1.0)
    b.push(tail_packet(3, 10))
    b.push(head_packet(1, 10))
    b.push(packet(2, 10))
    assert [p.sequence_number for p in b.pop(True)] == [1, 2, 3]
    assert b.pop(True) == []


def test_force_pop_samples_discards_incomplete_tail():
    b = JitterBuffer(_TestDepacketizer(), 30, 1.0)
    b.push(head_packet(1, 10))
    b.push(packet(2, 10))
    b.push(tail_packet(3, 10))
    b.push(head_packet(4, 11))
    samples = b.pop_samples(True)
    assert [[p.sequence_number for p in s] for s in samples] == [[1, 2, 3]]
    assert b.pop(True) == []


def test_padding_before_start_is_ignored():
    b = JitterBuffer(_TestDepacketizer(), 30, 1.0)
    b.push(RtpPacket(1, 10, False, b""))
    assert b.pop(True) == []


def test_late_packet_counts_as_loss():
    calls = []
    b = JitterBuffer(_TestDepacketizer(), 30, 1.0, on_packet_dropped=lambda: calls.append(1))
    b.push(head_packet(1, 10))
    b.push(tail_packet(2, 10))
    assert len(b.pop(False)) == 2
    b.push(tail_packet(1, 10))
    assert calls == [1]
    assert b.packet_loss() == 1 / 3
    assert b.pop(False) == []


def test_packet_loss_without_packets_is_nan():
    b = JitterBuffer(_TestDepacketizer(), 30, 1.0)
    loss = b.packet_loss()
    assert math.isnan(loss) is True
    assert str(loss) == "nan"