"""Reassembles media samples from reordered RTP packets.

Packets are kept in a circular window; a sample is released once all of its
packets are present, and incomplete samples are dropped when they fall too far
behind the newest packet.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from rtcmedia.jitter import Depacketizer, RtpPacket

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF


@dataclass
class Sample:
    """A media frame: its payload and its duration in seconds."""

    data: bytes = b""
    duration: float = 0.0


class _Slot:
    __slots__ = ("start", "end", "packet")

    def __init__(
        self,
        start: bool = False,
        end: bool = False,
        packet: Optional[RtpPacket] = None,
    ):
        self.start = start
        self.end = end
        self.packet = packet


class SampleBuilder:
    """Buffers RTP packets and produces complete media samples.

    ``max_late`` is the number of sequence numbers the builder waits before
    giving up on an incomplete sample; the window holds twice that many
    packets to allow for delays between push and pop.
    """

    def __init__(
        self,
        max_late: int,
        depacketizer: Depacketizer,
        sample_rate: int,
        packet_release_handler: Optional[Callable[[RtpPacket], None]] = None,
        on_packet_dropped: Optional[Callable[[], None]] = None,
    ):
        max_late = min(max(max_late, 2), 0x7FFF)
        self._size = 2 * max_late + 1
        self._packets: List[_Slot] = [_Slot() for _ in range(self._size)]
        self._head = 0
        self._tail = 0
        self._max_late = max_late
        self._depacketizer = depacketizer
        self._sample_rate = sample_rate
        self._packet_release_handler = packet_release_handler
        self._on_packet_dropped = on_packet_dropped

        self._last_seqno_valid = False
        self._last_seqno = 0
        self._last_timestamp_valid = False
        self._last_timestamp = 0

    # window helpers

    def _length(self) -> int:
        if self._tail <= self._head:
            return self._head - self._tail
        return self._head + self._size - self._tail

    def _cap(self) -> int:
        # head == tail means empty, so one slot always stays free
        return self._size - 1

    def _inc(self, n: int) -> int:
        return n + 1 if n < self._size - 1 else 0

    def _dec(self, n: int) -> int:
        return n - 1 if n > 0 else self._size - 1

    def _is_start(self, p: RtpPacket) -> bool:
        return not p.payload or self._depacketizer.is_partition_head(p.payload)

    def _is_end(self, p: RtpPacket) -> bool:
        return not p.payload or self._depacketizer.is_partition_tail(p.marker, p.payload)

    def check(self) -> None:
        """Verify the internal invariants, raising RuntimeError if one is broken."""
        if self._head == self._tail:
            return
        packets = self._packets
        tail_slot = packets[self._tail]
        if tail_slot.packet is None:
            raise RuntimeError("tail is missing")
        if packets[self._dec(self._head)].packet is None:
            raise RuntimeError("head is missing")
        if self._last_seqno_valid:
            diff = (tail_slot.packet.sequence_number - self._last_seqno) & _U16
            if diff == 0 or diff & 0x8000:
                raise RuntimeError("lastSeqno is after tail")

        tail_seqno = tail_slot.packet.sequence_number
        last_index = self._dec(self._head)
        for i in range(self._length()):
            index = (self._tail + i) % self._size
            slot = packets[index]
            if slot.packet is None:
                continue
            if slot.packet.sequence_number != (tail_seqno + i) & _U16:
                raise RuntimeError("wrong seqno")
            ts = slot.packet.timestamp
            if index != self._tail and not slot.start:
                prev = packets[self._dec(index)].packet
                if prev is not None and prev.timestamp != ts:
                    raise RuntimeError("start is not set")
            if index != last_index and not slot.end:
                nxt = packets[self._inc(index)].packet
                if nxt is not None and nxt.timestamp != ts:
                    raise RuntimeError("end is not set")

        i = self._head
        while i != self._tail:
            if packets[i].packet is not None:
                raise RuntimeError("packet is set")
            i = self._inc(i)

    def _release(self, release_packet: bool) -> bool:
        if self._head == self._tail:
            return False
        slot = self._packets[self._tail]
        assert slot.packet is not None
        self._last_seqno_valid = True
        self._last_seqno = slot.packet.sequence_number
        if release_packet and self._packet_release_handler is not None:
            self._packet_release_handler(slot.packet)
        self._packets[self._tail] = _Slot()
        self._tail = self._inc(self._tail)
        while self._tail != self._head and self._packets[self._tail].packet is None:
            self._tail = self._inc(self._tail)
        if self._tail == self._head:
            self._head = 0
            self._tail = 0
        return True

    def _release_all(self) -> None:
        while self._tail != self._head:
            self._release(True)

    def _drop(self) -> Tuple[bool, int]:
        """Drop the oldest frame even if incomplete; return (dropped, timestamp)."""
        if self._tail == self._head:
            return False, 0
        if self._on_packet_dropped is not None:
            self._on_packet_dropped()
        first = self._packets[self._tail].packet
        assert first is not None
        ts = first.timestamp
        self._release(True)
        while self._tail != self._head:
            slot = self._packets[self._tail]
            if slot.start or slot.packet.timestamp != ts:
                break
            self._release(True)
        if not self._last_timestamp_valid:
            self._last_timestamp = ts
            self._last_timestamp_valid = True
        return True, ts

    def push(self, pkt: RtpPacket) -> None:
        """Add a packet to the window. The packet is kept, not copied."""
        seqno = pkt.sequence_number
        if self._last_seqno_valid:
            behind = (self._last_seqno - seqno) & _U16
            if behind & 0x8000 == 0:
                # late packet
                if behind > self._max_late:
                    self._last_seqno_valid = False
                else:
                    return
            else:
                last = (seqno - self._max_late) & _U16
                if (last - self._last_seqno) & 0x8000 == 0:
                    if self._head != self._tail:
                        tail_pkt = self._packets[self._tail].packet
                        before_tail = (tail_pkt.sequence_number - 1) & _U16
                        if (last - before_tail) & 0x8000 == 0:
                            last = before_tail
                    self._last_seqno = last

        packets = self._packets
        if self._head == self._tail:
            packets[0] = _Slot(self._is_start(pkt), self._is_end(pkt), pkt)
            self._tail = 0
            self._head = 1
            return

        ts = pkt.timestamp
        last = self._dec(self._head)
        last_seqno = packets[last].packet.sequence_number

        if seqno == (last_seqno + 1) & _U16:
            # sequential
            if self._tail == self._inc(self._head):
                self._drop()
            if self._tail != self._head:
                last_slot = packets[last]
                start = (
                    last_slot.end
                    or last_slot.packet.timestamp != ts
                    or self._is_start(pkt)
                )
                if start:
                    last_slot.end = True
            else:
                start = self._is_start(pkt)
            packets[self._head] = _Slot(start, self._is_end(pkt), pkt)
            self._head = self._inc(self._head)
            return

        if (seqno - last_seqno) & 0x8000 == 0:
            # packet in the future
            count = (seqno - last_seqno - 1) & _U16
            if count >= self._cap():
                self._release_all()
                self.push(pkt)
                return
            while self._length() + count + 1 >= self._cap():
                dropped, _ = self._drop()
                if not dropped:
                    return
            index = (self._head + count) % self._size
            packets[index] = _Slot(self._is_start(pkt), self._is_end(pkt), pkt)
            self._head = self._inc(index)
            return

        # packet in the past
        count = (last_seqno - seqno + 1) & _U16
        if count >= self._cap():
            return
        if self._head >= count:
            index = self._head - count
        else:
            index = self._head + self._size - count

        if self._tail < self._head:
            if index < self._tail or index > self._head:
                self._tail = index
        elif self._tail > index > self._head:
            self._tail = index

        if packets[index].packet is not None:
            # duplicate
            if self._packet_release_handler is not None:
                self._packet_release_handler(pkt)
            return

        start = self._is_start(pkt)
        if index != self._tail:
            prev = packets[self._dec(index)]
            if prev.packet is not None:
                if prev.packet.timestamp != ts:
                    start = True
                if not start:
                    start = prev.end
                else:
                    prev.end = True
        end = self._is_end(pkt)
        nxt = packets[self._inc(index)]
        if nxt.packet is not None:
            if nxt.packet.timestamp != ts:
                end = True
            if not end:
                end = nxt.start
            else:
                nxt.start = True

        packets[index] = _Slot(start, end, pkt)

    def _pop_rtp_packets(self, force: bool) -> Tuple[List[RtpPacket], int]:
        packets = self._packets
        while True:
            if self._tail == self._head:
                return [], 0

            tail_slot = packets[self._tail]
            if not tail_slot.start:
                diff = (
                    packets[self._dec(self._head)].packet.sequence_number
                    - tail_slot.packet.sequence_number
                ) & _U16
                if force or diff > self._max_late:
                    self._drop()
                    continue
                return [], 0

            seqno = tail_slot.packet.sequence_number
            if (
                not force
                and self._last_seqno_valid
                and (self._last_seqno + 1) & _U16 != seqno
            ):
                # loss before tail
                return [], 0

            ts = tail_slot.packet.timestamp
            last = self._tail
            restart = False
            while last != self._head and not packets[last].end:
                if packets[last].packet is None:
                    if force:
                        self._drop()
                        restart = True
                        break
                    return [], 0
                last = self._inc(last)
            if restart:
                continue

            if last == self._head:
                return [], 0
            count = last - self._tail + 1
            if last < self._tail:
                count += self._size
            out: List[RtpPacket] = []
            for _ in range(count):
                out.append(packets[self._tail].packet)
                self._release(False)
            return out, ts

    def _pop_sample(self, force: bool) -> Tuple[Optional[Sample], int]:
        packets, ts = self._pop_rtp_packets(force)
        if not packets:
            return None, 0

        chunks: List[bytes] = []
        failed = False
        for p in packets:
            if not failed:
                try:
                    chunks.append(self._depacketizer.unmarshal(p.payload))
                except ValueError:
                    failed = True
            if self._packet_release_handler is not None:
                self._packet_release_handler(p)
        if failed:
            return None, 0

        samples = (ts - self._last_timestamp) & _U32 if self._last_timestamp_valid else 0
        self._last_timestamp_valid = True
        self._last_timestamp = ts
        return Sample(b"".join(chunks), samples / self._sample_rate), ts

    def pop_with_timestamp(self) -> Tuple[Optional[Sample], int]:
        """Return the next complete sample and its RTP timestamp, or (None, 0)."""
        return self._pop_sample(False)

    def pop(self) -> Optional[Sample]:
        """Return the next complete sample, or None if none is ready."""
        sample, _ = self._pop_sample(False)
        return sample

    def force_pop_with_timestamp(self) -> Tuple[Optional[Sample], int]:
        """Like pop_with_timestamp, but skips past missing packets.

        Once this returns (None, 0) the builder is empty.
        """
        return self._pop_sample(True)

    def pop_packets(self) -> List[RtpPacket]:
        """Return the packets of the next complete sample, or an empty list.

        The release handler is not called for these packets.
        """
        packets, _ = self._pop_rtp_packets(False)
        return packets

    def force_pop_packets(self) -> List[RtpPacket]:
        """Like pop_packets, but drops incomplete samples in the way."""
        packets, _ = self._pop_rtp_packets(True)
        return packets