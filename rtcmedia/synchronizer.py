"""Audio/video synchronization of remote tracks using RTP timestamps and sender reports.

All durations and presentation timestamps are integers in nanoseconds.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

from rtcmedia.jitter import RtpPacket

_log = logging.getLogger(__name__)

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF

EWMA_WEIGHT = 0.9
MAX_DRIFT = 15_000_000  # 15ms
MAX_TS_DIFF = 60_000_000_000  # one minute
MAX_SN_DROPOUT = 3000
_UINT32_HALF = 2147483648
_UINT32_OVERFLOW = 4294967296

_NTP_EPOCH_OFFSET = 2208988800  # seconds between 1900 and 1970


class TrackKind(enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class TrackRemote:
    """The properties of a remote track the synchronizer needs."""

    id: str
    kind: TrackKind
    ssrc: int
    clock_rate: int
    mime_type: str = ""


@dataclass(frozen=True)
class SenderReport:
    """An RTCP sender report: 64-bit NTP time and the matching RTP time."""

    ssrc: int
    ntp_time: int
    rtp_time: int


class BackwardsPtsError(ValueError):
    """A packet would get a presentation timestamp earlier than the previous one."""

    def __init__(self) -> None:
        super().__init__("backwards pts")


class EndOfStream(EOFError):
    """The packet lies past the end of the synchronized session."""


def _go_round(x: float) -> int:
    """Round half away from zero."""
    if x >= 0:
        return math.floor(x + 0.5)
    return -math.floor(-x + 0.5)


def _ntp_to_unix_ns(ntp_time: int) -> int:
    seconds = (ntp_time >> 32) & _U32
    fraction = ntp_time & _U32
    return (seconds - _NTP_EPOCH_OFFSET) * 1_000_000_000 + ((fraction * 1_000_000_000) >> 32)


class _RtpConverter:
    """Converts RTP clock ticks to nanoseconds using a reduced fraction."""

    def __init__(self, clock_rate: int) -> None:
        n = 1_000_000_000
        d = clock_rate
        for i in (10, 3, 2):
            while n % i == 0 and d % i == 0:
                n //= i
                d //= i
        self._n = n
        self._d = d

    def to_duration(self, rtp_duration: int) -> int:
        if rtp_duration >= 0:
            return rtp_duration * self._n // self._d
        return -((-rtp_duration) * self._n // self._d)


@dataclass
class TrackStats:
    """Running statistics of a track; durations in RTP ticks, drift in nanoseconds."""

    avg_sample_duration: float = 0.0
    avg_drift: float = 0.0
    max_drift: int = 0

    def _update_drift(self, drift: int) -> None:
        drift = abs(drift)
        self.avg_drift = EWMA_WEIGHT * self.avg_drift + (1 - EWMA_WEIGHT) * drift
        if drift > self.max_drift:
            self.max_drift = drift

    def _update_sample_duration(self, duration: int) -> None:
        if duration > 1:
            self.avg_sample_duration = (
                EWMA_WEIGHT * self.avg_sample_duration + (1 - EWMA_WEIGHT) * duration
            )


class TrackSynchronizer:
    """Computes presentation timestamps for the packets of one track."""

    def __init__(self, sync: Optional["Synchronizer"], track: TrackRemote) -> None:
        self._lock = threading.Lock()
        self._sync = sync
        self.track = track
        self.stats = TrackStats()
        self._converter = _RtpConverter(track.clock_rate)
        if track.kind is TrackKind.AUDIO:
            # opus packets default to 20ms
            self.stats.avg_sample_duration = track.clock_rate / 50
        else:
            # 30 fps for video
            self.stats.avg_sample_duration = track.clock_rate / 30

        self._last_sr = 0
        self._started_at = 0
        self._first_ts = 0
        self._max_pts = 0

        self._backwards = 0
        self._last_packet = 0  # wall clock ns, 0 until the first packet
        self._last_sn = 0
        self._last_ts = 0
        self._last_pts = 0
        self._last_valid = False
        self._inserted = 0

        self._sn_offset = 0
        self._pts_offset = 0

    def initialize(self, pkt: RtpPacket) -> None:
        """Call as soon as the first packet of the track arrives."""
        sync = self._sync
        if sync is None:
            raise RuntimeError("track has been removed from its synchronizer")
        now = time.time_ns()
        started_at = sync._get_or_set_started_at(now)
        with self._lock:
            self._started_at = started_at
            self._first_ts = pkt.timestamp
            self._pts_offset = now - started_at

    def get_pts(self, pkt: RtpPacket) -> int:
        """Return the packet's presentation timestamp, resetting offsets when needed.

        Packets are expected in order. Raises BackwardsPtsError or EndOfStream.
        """
        with self._lock:
            ts, pts, valid = self._adjust(pkt)
            if pts < self._last_pts:
                if self._backwards == 0:
                    _log.warning(
                        "backwards pts: timestamp=%d sequence number=%d pts=%d "
                        "last pts=%d last timestamp=%d last sn=%d",
                        pkt.timestamp,
                        pkt.sequence_number,
                        pts,
                        self._last_pts,
                        self._last_ts,
                        self._last_sn,
                    )
                self._backwards += 1
                raise BackwardsPtsError()
            if self._backwards > 0:
                _log.debug("packets dropped: count=%d reason=backwards pts", self._backwards)
                self._backwards = 0

            if (
                valid
                and self._last_valid
                and pkt.sequence_number == (self._last_sn + 1) & _U16
            ):
                self.stats._update_sample_duration(ts - self._last_ts)

            if self._max_pts > 0 and (pts > self._max_pts or not valid):
                raise EndOfStream("past end of stream")

            self._last_packet = time.time_ns()
            self._last_ts = ts
            self._last_sn = pkt.sequence_number
            self._last_pts = pts
            self._last_valid = valid
            self._inserted = 0
            return pts

    def _adjust(self, pkt: RtpPacket) -> Tuple[int, int, bool]:
        if self._last_packet == 0:
            ts = pkt.timestamp
            while ts < self._first_ts - _UINT32_HALF:
                ts += _UINT32_OVERFLOW
            return ts, self._elapsed(ts) + self._pts_offset, True

        pkt.sequence_number = (pkt.sequence_number + self._sn_offset) & _U16
        sn = pkt.sequence_number
        if (
            self._last_ts != 0
            and (sn - self._last_sn) & _U16 > MAX_SN_DROPOUT
            and (self._last_sn - sn) & _U16 > MAX_SN_DROPOUT
        ):
            self._sn_offset = (self._sn_offset + self._last_sn + 1 - sn) & _U16
            pkt.sequence_number = (self._last_sn + 1) & _U16
            _log.debug(
                "resetting track synchronizer: reason=SN gap lastSN=%d SN=%d",
                self._last_sn,
                pkt.sequence_number,
            )
            ts, pts = self._reset_rtp(pkt)
            return ts, pts, False

        ts = pkt.timestamp
        while ts < self._last_ts - _UINT32_HALF:
            ts += _UINT32_OVERFLOW

        if ts == self._last_ts:
            return ts, self._last_pts, self._last_valid

        pts = self._elapsed(ts) + self._pts_offset
        expected = time.time_ns() - (self._started_at + self._pts_offset)
        if pts > expected + MAX_TS_DIFF:
            _log.debug(
                "resetting track synchronizer: reason=pts out of bounds pts=%d expected=%d",
                pts,
                expected,
            )
            ts, pts = self._reset_rtp(pkt)
            return ts, pts, False

        return ts, pts, True

    def _elapsed(self, ts: int) -> int:
        return self._converter.to_duration(ts - self._first_ts)

    def _reset_rtp(self, pkt: RtpPacket) -> Tuple[int, int]:
        frames = (time.time_ns() - self._last_packet) // self._frame_duration()
        duration = self._frame_duration_rtp() * frames
        ts = self._last_ts + duration
        pts = self._last_pts + self._converter.to_duration(duration)
        self._first_ts += pkt.timestamp - ts
        return ts, pts

    def insert_frame(self, pkt: RtpPacket) -> int:
        """Stamp an injected (usually blank) frame and shift later packets after it."""
        with self._lock:
            pts, _ = self._insert_frame_before(pkt, None)
            return pts

    def insert_frame_before(
        self, pkt: RtpPacket, next_pkt: Optional[RtpPacket]
    ) -> Tuple[int, bool]:
        """Like insert_frame, but only if a whole frame fits before ``next_pkt``."""
        with self._lock:
            return self._insert_frame_before(pkt, next_pkt)

    def _insert_frame_before(
        self, pkt: RtpPacket, next_pkt: Optional[RtpPacket]
    ) -> Tuple[int, bool]:
        self._inserted += 1
        self._sn_offset = (self._sn_offset + 1) & _U16
        self._last_valid = False

        frame_duration_rtp = self._frame_duration_rtp()
        ts = self._last_ts + self._inserted * frame_duration_rtp
        if next_pkt is not None:
            next_ts, _, _ = self._adjust(next_pkt)
            if ts + frame_duration_rtp > next_ts:
                return 0, False

        pkt.sequence_number = (self._last_sn + self._inserted) & _U16
        pkt.timestamp = ts & _U32
        pts = self._last_pts + self._converter.to_duration(frame_duration_rtp * self._inserted)
        return pts, True

    def get_frame_duration(self) -> int:
        """Return the rounded frame duration in nanoseconds."""
        with self._lock:
            return self._frame_duration()

    def _frame_duration(self) -> int:
        clock_rate = self.track.clock_rate
        avg = self.stats.avg_sample_duration
        if self.track.kind is TrackKind.AUDIO:
            # opus packets are rounded to 2.5ms
            step = clock_rate / 400
            return _go_round(avg / step) * 2_500_000
        # video is rounded to 1/3000th of a second
        step = clock_rate / 3000
        return _go_round(_go_round(avg / step) * 1e6 / 3)

    def _frame_duration_rtp(self) -> int:
        clock_rate = self.track.clock_rate
        if self.track.kind is TrackKind.AUDIO:
            step = clock_rate / 400
        else:
            step = clock_rate / 3000
        return int(_go_round(self.stats.avg_sample_duration / step) * step)

    def get_track_stats(self) -> TrackStats:
        return replace(self.stats)

    def _sender_report_pts(self, pkt: SenderReport) -> int:
        with self._lock:
            return self._sender_report_pts_locked(pkt)

    def _sender_report_pts_locked(self, pkt: SenderReport) -> int:
        ts = pkt.rtp_time
        while ts < self._last_ts - _UINT32_OVERFLOW // 2:
            ts += _UINT32_OVERFLOW
        return self._elapsed(ts) + self._pts_offset

    def _on_sender_report(self, pkt: SenderReport, ntp_start: int) -> None:
        with self._lock:
            # every sender report arrives twice
            if pkt.rtp_time == self._last_sr:
                return
            pts = self._sender_report_pts_locked(pkt)
            calculated_start = _ntp_to_unix_ns(pkt.ntp_time) - pts
            drift = calculated_start - ntp_start
            self.stats._update_drift(drift)
            drift = max(-MAX_DRIFT, min(MAX_DRIFT, drift))
            self._pts_offset += drift
            self._last_sr = pkt.rtp_time


class _ParticipantSynchronizer:
    """Sender report bookkeeping for the tracks of one participant."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ntp_start: Optional[int] = None
        self.tracks: Dict[int, TrackSynchronizer] = {}
        self.sender_reports: Dict[int, SenderReport] = {}

    def on_sender_report(self, pkt: SenderReport) -> None:
        with self.lock:
            if self.ntp_start is None:
                self.sender_reports[pkt.ssrc] = pkt
                if len(self.sender_reports) == len(self.tracks):
                    self._synchronize_tracks()
                return
            track = self.tracks.get(pkt.ssrc)
            if track is not None:
                track._on_sender_report(pkt, self.ntp_start)

    def _synchronize_tracks(self) -> None:
        estimated: Dict[int, int] = {}
        earliest: Optional[int] = None
        for ssrc, pkt in self.sender_reports.items():
            track = self.tracks[ssrc]
            pts = track._sender_report_pts(pkt)
            start = _ntp_to_unix_ns(pkt.ntp_time) - pts
            if earliest is None or start < earliest:
                earliest = start
            estimated[ssrc] = start
        self.ntp_start = earliest

        for ssrc, started_at in estimated.items():
            diff = started_at - earliest
            if diff != 0:
                track = self.tracks[ssrc]
                with track._lock:
                    track._pts_offset += diff

    def get_max_offset(self) -> int:
        max_offset = 0
        with self.lock:
            for track in self.tracks.values():
                with track._lock:
                    if track._pts_offset > max_offset:
                        max_offset = track._pts_offset
        return max_offset

    def drain(self, max_pts: int) -> None:
        with self.lock:
            for track in self.tracks.values():
                with track._lock:
                    track._max_pts = max_pts


class Synchronizer:
    """Shared by all audio and video writers of a session to keep them in sync."""

    def __init__(self, on_started: Optional[Callable[[], None]] = None) -> None:
        self._lock = threading.Lock()
        self._started_at = 0
        self._on_started = on_started
        self._ended_at = 0
        self._ps_by_identity: Dict[str, _ParticipantSynchronizer] = {}
        self._ps_by_ssrc: Dict[int, _ParticipantSynchronizer] = {}
        self._ssrc_by_id: Dict[str, int] = {}

    def add_track(self, track: TrackRemote, identity: str) -> TrackSynchronizer:
        t = TrackSynchronizer(self, track)
        with self._lock:
            participant = self._ps_by_identity.get(identity)
            if participant is None:
                participant = _ParticipantSynchronizer()
                self._ps_by_identity[identity] = participant
            ssrc = track.ssrc & _U32
            self._ssrc_by_id[track.id] = ssrc
            self._ps_by_ssrc[ssrc] = participant
        with participant.lock:
            participant.tracks[ssrc] = t
        return t

    def remove_track(self, track_id: str) -> None:
        with self._lock:
            ssrc = self._ssrc_by_id.pop(track_id, 0)
            participant = self._ps_by_ssrc.pop(ssrc, None)
        if participant is None:
            return
        with participant.lock:
            track = participant.tracks.pop(ssrc, None)
            if track is not None:
                track._sync = None
            participant.sender_reports.pop(ssrc, None)

    def get_started_at(self) -> int:
        """Return the session start as Unix time in nanoseconds, 0 if not started."""
        with self._lock:
            return self._started_at

    def _get_or_set_started_at(self, now: int) -> int:
        with self._lock:
            if self._started_at == 0:
                self._started_at = now
                if self._on_started is not None:
                    self._on_started()
            return self._started_at

    def on_rtcp(self, packet: object) -> None:
        """Feed an RTCP packet; sender reports are used to align the tracks."""
        if not isinstance(packet, SenderReport):
            return
        with self._lock:
            participant = self._ps_by_ssrc.get(packet.ssrc)
            ended_at = self._ended_at
        if ended_at != 0 or participant is None:
            return
        participant.on_sender_report(packet)

    def end(self) -> None:
        """Mark the session ended; later packets past the end raise EndOfStream."""
        end_time = time.time_ns()
        with self._lock:
            max_offset = 0
            for participant in self._ps_by_identity.values():
                max_offset = max(max_offset, participant.get_max_offset())
            self._ended_at = end_time + max_offset
            max_pts = self._ended_at - self._started_at
            for participant in self._ps_by_identity.values():
                participant.drain(max_pts)

    def get_ended_at(self) -> int:
        with self._lock:
            return self._ended_at