"""Jitter buffer that reorders RTP packets and releases complete samples."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterator, List, Optional, Union

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF

Latency = Union[float, int, timedelta]


@dataclass
class RtpPacket:
    """The parts of an RTP packet the buffers care about."""

    sequence_number: int = 0
    timestamp: int = 0
    marker: bool = False
    payload: bytes = b""


class Depacketizer:
    """Codec-specific payload inspection used to find sample boundaries.

    The default treats every payload as the head of a partition and the
    marker bit as its tail; codecs override these checks.
    """

    def unmarshal(self, payload: bytes) -> bytes:
        return bytes(payload)

    def is_partition_head(self, payload: bytes) -> bool:
        return True

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        return marker


def _before16(a: int, b: int) -> bool:
    return ((b - a) & 0x8000) == 0


def _before32(a: int, b: int) -> bool:
    return ((b - a) & 0x80000000) == 0


def _outside_range(a: int, b: int) -> bool:
    return ((a - b) & _U16) > 3000 and ((b - a) & _U16) > 3000


def _latency_to_rtp(max_latency: Latency, clock_rate: int) -> int:
    seconds = (
        max_latency.total_seconds()
        if isinstance(max_latency, timedelta)
        else float(max_latency)
    )
    return int(seconds * clock_rate) & _U32


class _Node:
    __slots__ = ("packet", "start", "end", "padding", "reset", "prev", "next")

    def __init__(self, packet: RtpPacket, start: bool, end: bool, padding: bool):
        self.packet = packet
        self.start = start
        self.end = end
        self.padding = padding
        self.reset = False
        self.prev: Optional[_Node] = None
        self.next: Optional[_Node] = None

    @property
    def sn(self) -> int:
        return self.packet.sequence_number

    @property
    def ts(self) -> int:
        return self.packet.timestamp


class JitterBuffer:
    """Orders RTP packets and hands out complete samples once they are ready.

    ``max_latency`` is given in seconds (or as a ``timedelta``).
    """

    def __init__(
        self,
        depacketizer: Depacketizer,
        clock_rate: int,
        max_latency: Latency,
        on_packet_dropped: Optional[Callable[[], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._depacketizer = depacketizer
        self._clock_rate = clock_rate
        self._max_late = _latency_to_rtp(max_latency, clock_rate)
        self._on_packet_dropped = on_packet_dropped
        self._logger = logger or logging.getLogger(__name__)
        self._packets_dropped = 0
        self._packets_total = 0

        self._lock = threading.RLock()
        self._initialized = False
        self._prev_sn = 0
        self._head: Optional[_Node] = None
        self._tail: Optional[_Node] = None
        self._max_sample_size = 0
        self._min_ts = 0

    def update_max_latency(self, max_latency: Latency) -> None:
        with self._lock:
            max_late = _latency_to_rtp(max_latency, self._clock_rate)
            self._min_ts = (self._min_ts + self._max_late - max_late) & _U32
            self._max_late = max_late

    def push(self, pkt: RtpPacket) -> None:
        with self._lock:
            self._packets_total += 1
            if not pkt.payload:
                # padding at the very beginning of a stream is useless
                if not self._initialized:
                    return
                node = _Node(pkt, True, True, True)
            else:
                node = _Node(
                    pkt,
                    self._depacketizer.is_partition_head(pkt.payload),
                    self._depacketizer.is_partition_tail(pkt.marker, pkt.payload),
                    False,
                )

            sn, ts = pkt.sequence_number, pkt.timestamp
            before_prev = _before16(sn, self._prev_sn)
            outside_prev = _outside_range(sn, self._prev_sn)

            if not self._initialized:
                if node.start and (self._head is None or _before16(sn, self._head.sn)):
                    self._initialized = True
                    self._prev_sn = (sn - 1) & _U16
                    self._min_ts = (ts - self._max_late) & _U32
                    node.reset = True
            elif before_prev and not outside_prev:
                if not node.padding:
                    self._packets_dropped += 1
                    self._notify_dropped()
                return

            if self._tail is None:
                if not node.reset:
                    node.reset = node.start and outside_prev
                self._min_ts = (ts - self._max_late) & _U32
                self._head = self._tail = node
                return

            head, tail = self._head, self._tail
            assert head is not None
            before_head = _before16(sn, head.sn)
            before_tail = _before16(sn, tail.sn)
            outside_head = _outside_range(sn, head.sn)
            outside_tail = _outside_range(sn, tail.sn)

            if not before_tail and not outside_tail:
                self._min_ts = (self._min_ts + ts - tail.ts) & _U32
                if sn == (tail.sn + 1) & _U16:
                    self._grow_sample_size(ts, tail.ts)
                self._append(node)
            elif outside_head and outside_tail:
                node.reset = node.start
                self._min_ts = (self._min_ts + self._max_sample_size) & _U32
                self._append(node)
            elif before_head and not outside_head:
                node.reset = node.start and outside_prev
                head.prev = node
                node.next = head
                self._head = node
            elif outside_tail:
                for c in self._walk_back(tail.prev):
                    if _before16(sn, c.sn) or _outside_range(sn, c.sn):
                        continue
                    if sn == (c.sn + 1) & _U16:
                        self._grow_sample_size(ts, c.ts)
                    self._insert_after(c, node)
                    break
            else:
                for c in self._walk_back(tail.prev):
                    outside_c = _outside_range(sn, c.sn)
                    if _before16(sn, c.sn) and not outside_c:
                        continue
                    if node.start and outside_c:
                        node.reset = True
                    elif sn == (c.sn + 1) & _U16:
                        self._grow_sample_size(ts, c.ts)
                    self._insert_after(c, node)
                    break

    def pop(self, force: bool = False) -> List[RtpPacket]:
        """Return the packets of the next complete samples (all packets if forced)."""
        with self._lock:
            if force:
                return [node.packet for node in self._take_all()]
            nodes = self._pop_ready()
            return [node.packet for node in nodes if not node.padding]

    def pop_samples(self, force: bool = False) -> List[List[RtpPacket]]:
        """Like pop, but with packets grouped per sample."""
        with self._lock:
            samples: List[List[RtpPacket]] = []
            sample: List[RtpPacket] = []
            if force:
                for node in self._take_all():
                    if node.start and sample:
                        samples.append(sample)
                        sample = []
                    sample.append(node.packet)
                    if node.end:
                        samples.append(sample)
                        sample = []
                return samples

            for node in self._pop_ready():
                if not node.padding:
                    sample.append(node.packet)
                if node.end:
                    samples.append(sample)
                    sample = []
            return samples

    def packet_loss(self) -> float:
        with self._lock:
            if self._packets_total == 0:
                return math.nan
            return self._packets_dropped / self._packets_total

    # internals

    def _notify_dropped(self) -> None:
        self._logger.debug("jitter buffer dropped packets (total %d)", self._packets_dropped)
        if self._on_packet_dropped is not None:
            self._on_packet_dropped()

    def _grow_sample_size(self, ts: int, prev_ts: int) -> None:
        size = (ts - prev_ts) & _U32
        if size > self._max_sample_size:
            self._max_sample_size = size

    def _append(self, node: _Node) -> None:
        assert self._tail is not None
        node.prev = self._tail
        self._tail.next = node
        self._tail = node

    @staticmethod
    def _walk_back(node: Optional[_Node]) -> Iterator[_Node]:
        while node is not None:
            yield node
            node = node.prev

    @staticmethod
    def _insert_after(c: _Node, node: _Node) -> None:
        assert c.next is not None
        c.next.prev = node
        node.next = c.next
        node.prev = c
        c.next = node

    def _take_all(self) -> List[_Node]:
        nodes = []
        c = self._head
        while c is not None:
            nodes.append(c)
            c = c.next
        self._head = self._tail = None
        return nodes

    def _pop_ready(self) -> List[_Node]:
        if not self._initialized:
            return []
        self._drop()
        if self._head is None or not self._head.start:
            return []
        end = self._get_end()
        if end is None:
            return []

        nodes = []
        c = self._head
        while True:
            nxt = c.next
            nodes.append(c)
            if nxt is not None:
                if _outside_range(nxt.sn, c.sn):
                    # account for a sequence number reset
                    self._min_ts = (
                        self._min_ts + nxt.ts - c.ts - self._max_sample_size
                    ) & _U32
                nxt.prev = None
            if c is end:
                self._prev_sn = c.sn
                self._head = nxt
                if nxt is None:
                    self._tail = None
                return nodes
            assert nxt is not None
            c = nxt

    def _get_end(self) -> Optional[_Node]:
        prev_sn = self._prev_sn
        prev_complete = True
        end = None
        c = self._head
        while c is not None:
            if c.sn != (prev_sn + 1) & _U16 and (
                not prev_complete
                or not c.reset
                or not _before32((c.ts - self._max_sample_size) & _U32, self._min_ts)
            ):
                break
            prev_complete = False
            if c.end:
                end = c
                prev_complete = True
            prev_sn = c.sn
            c = c.next
        return end

    def _drop(self) -> None:
        head = self._head
        if head is None:
            return

        dropped = False
        mss = self._max_sample_size

        if head.sn != (self._prev_sn + 1) & _U16 and (
            (head.start and _before32((head.ts - mss) & _U32, self._min_ts))
            or (not head.start and _before32(head.ts, self._min_ts))
        ):
            # missing packets are too old now; on a reset we cannot tell if any were lost
            if not head.reset:
                self._packets_dropped += 1
                dropped = True

            while (
                self._head is not None
                and not self._head.start
                and _before32((self._head.ts - mss) & _U32, self._min_ts)
            ):
                dropped = True
                self._packets_dropped += 1
                self._prev_sn = (self._head.sn - 1) & _U16
                self._drop_head()

            if self._head is not None:
                self._prev_sn = (self._head.sn - 1) & _U16

        c = self._head
        while c is not None:
            if (c.start and _before32(self._min_ts, c.ts)) or (
                not c.start and not _before32(c.ts, self._min_ts)
            ):
                break
            dropped = True
            ts = c.ts
            while True:
                self._packets_dropped += 1
                self._drop_head()
                c = self._head
                if c is None or c.ts != ts:
                    break

        if dropped:
            self._notify_dropped()

    def _drop_head(self) -> None:
        c = self._head
        assert c is not None
        self._prev_sn = c.sn
        self._head = c.next
        if self._head is None:
            self._tail = None
        else:
            self._head.prev = None
            if _outside_range(self._head.sn, c.sn):
                self._min_ts = (
                    self._min_ts + self._head.ts - c.ts - self._max_sample_size
                ) & _U32
        c.next = None