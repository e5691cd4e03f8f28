import time

import pytest

from rtcmedia.jitter import RtpPacket
from rtcmedia.synchronizer import (
    BackwardsPtsError,
    EndOfStream,
    SenderReport,
    Synchronizer,
    TrackKind,
    TrackRemote,
)

NTP_SECONDS = 3_900_000_000


def make_track(kind, track_id="track_1", ssrc=1234):
    if kind is TrackKind.AUDIO:
        return TrackRemote(id=track_id, kind=kind, ssrc=ssrc, clock_rate=48000, mime_type="audio/opus")
    return TrackRemote(id=track_id, kind=kind, ssrc=ssrc, clock_rate=90000, mime_type="video/vp8")


class TrackTester:
    def __init__(self, sync, kind, track_id="track_1", ssrc=1234):
        self.ts = sync.add_track(make_track(kind, track_id, ssrc), "fake")
        self.i = 0
        self.expected_pts = 0
        if kind is TrackKind.AUDIO:
            self.sn = 55555
            self.timestamp = 55555555
            self.frame_duration_rtp = 960
            self.frame_duration_pts = 20_000_000
        else:
            self.sn = 100
            self.timestamp = 10000
            self.frame_duration_rtp = 3750
            self.frame_duration_pts = 41_666_666
        self.ts.stats.avg_sample_duration = float(self.frame_duration_rtp)
        self.ts.initialize(RtpPacket(sequence_number=self.sn, timestamp=self.timestamp))

    def expect_next_frame(self, sleep):
        self.timestamp = (self.timestamp + self.frame_duration_rtp) & 0xFFFFFFFF
        self.expected_pts += self.frame_duration_pts
        if sleep:
            time.sleep(self.frame_duration_pts / 1e9)
        self.i += 1
        if self.frame_duration_rtp == 3750 and self.i % 3 != 1:
            self.expected_pts += 1

    def check_next_frame(self, sleep):
        self.expect_next_frame(sleep)
        self.sn = (self.sn + 1) & 0xFFFF
        self.check_packet()
        self.sn = (self.sn + 1) & 0xFFFF
        return self.check_packet()

    def check_blank_frame(self):
        self.expect_next_frame(True)
        pts = self.ts.insert_frame(RtpPacket())
        assert abs(pts - self.expected_pts) <= 1
        return pts

    def adjust_expected(self, estimated_pts):
        pts = self.ts.get_pts(RtpPacket(sequence_number=self.sn, timestamp=self.timestamp))
        assert abs(pts - estimated_pts) <= estimated_pts / 10
        self.expected_pts = pts
        return pts

    def check_packet(self):
        pts = self.ts.get_pts(RtpPacket(sequence_number=self.sn, timestamp=self.timestamp))
        assert abs(pts - self.expected_pts) <= 1
        return pts


def test_synchronizer():
    s = Synchronizer()
    tt = TrackTester(s, TrackKind.VIDEO)

    assert tt.check_packet() == 0
    tt.sn += 1
    assert tt.check_packet() == 0

    tt.check_next_frame(True)

    # sequence number jump
    tt.sn = (tt.sn + 4000) & 0xFFFF
    tt.check_next_frame(True)

    # dropped packets
    tt.expect_next_frame(True)
    tt.expect_next_frame(True)
    tt.sn += 6
    tt.check_next_frame(True)

    # sequence number and timestamp jump
    tt.sn = (tt.sn + 6000) & 0xFFFF
    tt.timestamp = (tt.timestamp + 1234567) & 0xFFFFFFFF
    tt.check_next_frame(True)

    tt.check_next_frame(True)
    tt.check_next_frame(True)

    tt.sn = (tt.sn + 5000) & 0xFFFF
    tt.timestamp = (tt.timestamp + 7654321) & 0xFFFFFFFF
    tt.check_next_frame(True)
    tt.check_next_frame(True)

    # mute
    for _ in range(4):
        tt.check_blank_frame()

    # unmute
    tt.check_next_frame(True)
    tt.check_next_frame(True)

    # mute
    for _ in range(4):
        tt.check_blank_frame()

    # unmute with sequence number and timestamp jump
    tt.sn = (tt.sn + 3333) & 0xFFFF
    tt.timestamp = (tt.timestamp + 33333333) & 0xFFFFFFFF
    tt.check_next_frame(True)
    last_pts = tt.check_next_frame(True)
    assert last_pts == pytest.approx(tt.expected_pts, abs=1)

    assert tt.ts.get_frame_duration() == round(1e9 / 24)


def test_multiple_tracks():
    audio_only = 1.0
    s = Synchronizer()
    tt1 = TrackTester(s, TrackKind.AUDIO, "track_a", 1)

    for _ in range(int(audio_only * 50)):
        tt1.check_next_frame(True)

    tt2 = TrackTester(s, TrackKind.VIDEO, "track_v", 2)
    start_pts = tt2.adjust_expected(int(audio_only * 1e9))
    assert abs(start_pts - audio_only * 1e9) <= audio_only * 1e8

    last_audio = last_video = None
    for i in range(600):
        if i % 12 == 0:
            last_audio = tt1.check_next_frame(False)
        if i % 25 == 0:
            last_video = tt2.check_next_frame(False)
    assert last_audio == pytest.approx(tt1.expected_pts, abs=1)
    assert last_video == pytest.approx(tt2.expected_pts, abs=1)


def test_audio_frame_duration_default():
    s = Synchronizer()
    ts = s.add_track(make_track(TrackKind.AUDIO), "p")
    assert ts.get_frame_duration() == 20_000_000
    assert ts.get_track_stats().avg_sample_duration == 960


def test_backwards_pts_raises():
    s = Synchronizer()
    tt = TrackTester(s, TrackKind.VIDEO)
    pts = tt.ts.get_pts(RtpPacket(sequence_number=100, timestamp=10000 + 3750))
    assert pts == 41_666_666
    with pytest.raises(BackwardsPtsError):
        tt.ts.get_pts(RtpPacket(sequence_number=101, timestamp=10000))


def test_on_started_called_once():
    calls = []
    s = Synchronizer(on_started=lambda: calls.append(1))
    TrackTester(s, TrackKind.AUDIO, "a", 1)
    TrackTester(s, TrackKind.VIDEO, "v", 2)
    assert calls == [1]
    assert s.get_started_at() > 0


def test_end_of_stream():
    s = Synchronizer()
    tt = TrackTester(s, TrackKind.VIDEO)
    assert tt.ts.get_pts(RtpPacket(sequence_number=100, timestamp=10000)) == 0
    s.end()
    assert s.get_ended_at() >= s.get_started_at()
    with pytest.raises(EndOfStream):
        tt.ts.get_pts(RtpPacket(sequence_number=101, timestamp=10000 + 9000))


def test_insert_frame_before_fits():
    s = Synchronizer()
    tt = TrackTester(s, TrackKind.VIDEO)
    tt.ts.get_pts(RtpPacket(sequence_number=100, timestamp=10000))
    pkt = RtpPacket()
    nxt = RtpPacket(sequence_number=101, timestamp=10000 + 3 * 3750)
    pts, ok = tt.ts.insert_frame_before(pkt, nxt)
    assert ok is True
    assert pts == 41_666_666
    assert pkt.sequence_number == 101
    assert pkt.timestamp == 13750
    assert nxt.sequence_number == 102


def test_insert_frame_before_too_close():
    s = Synchronizer()
    tt = TrackTester(s, TrackKind.VIDEO)
    tt.ts.get_pts(RtpPacket(sequence_number=100, timestamp=10000))
    pkt = RtpPacket()
    nxt = RtpPacket(sequence_number=101, timestamp=10000 + 3750)
    assert tt.ts.insert_frame_before(pkt, nxt) == (0, False)
    assert pkt.timestamp == 0


def test_sender_reports_align_tracks_and_limit_drift():
    s = Synchronizer()
    audio = TrackTester(s, TrackKind.AUDIO, "a", 11)
    video = TrackTester(s, TrackKind.VIDEO, "v", 22)

    s.on_rtcp(SenderReport(ssrc=11, ntp_time=NTP_SECONDS << 32, rtp_time=(55555555 + 48000) & 0xFFFFFFFF))
    s.on_rtcp(SenderReport(ssrc=22, ntp_time=(NTP_SECONDS << 32) | 0x80000000, rtp_time=10000 + 90000))

    # video started half a second after audio according to the reports
    drift_report = SenderReport(ssrc=22, ntp_time=(NTP_SECONDS + 2) << 32, rtp_time=10000 + 180000)
    s.on_rtcp(drift_report)
    s.on_rtcp(drift_report)

    stats = video.ts.get_track_stats()
    assert stats.max_drift == 500_000_000
    assert stats.avg_drift == pytest.approx(50_000_000)

    assert audio.ts.get_pts(RtpPacket(sequence_number=55555, timestamp=55555555)) == 0
    assert video.ts.get_pts(RtpPacket(sequence_number=100, timestamp=10000)) == 515_000_000


def test_removed_track_cannot_initialize():
    s = Synchronizer()
    ts = s.add_track(make_track(TrackKind.VIDEO, "gone", 7), "p")
    s.remove_track("gone")
    with pytest.raises(RuntimeError):
        ts.initialize(RtpPacket(sequence_number=1, timestamp=1))
    assert s.get_started_at() == 0