# rtcmedia

Building blocks for handling real-time media streams in pure Python, with no
runtime dependencies beyond the standard library.

## Modules

### `rtcmedia.jitter`

- `RtpPacket` — a dataclass with `sequence_number`, `timestamp`, `marker`
  and `payload`.
- `Depacketizer` — decides where a sample starts and ends. The base class
  treats every payload as a partition head, the marker bit as the partition
  tail, and `unmarshal` returns the payload unchanged. Subclass it for a
  particular codec.
- `JitterBuffer(depacketizer, clock_rate, max_latency, on_packet_dropped=None,
  logger=None)` — reorders pushed packets and releases them once a complete
  sample is ready. `max_latency` is in seconds (or a `timedelta`); samples
  older than that are dropped and `on_packet_dropped` is called.
  - `push(pkt)`
  - `pop(force=False)` — the packets of the ready samples; with `force=True`
    every buffered packet.
  - `pop_samples(force=False)` — the same, grouped into one list per sample.
  - `update_max_latency(max_latency)`
  - `packet_loss()` — dropped packets divided by pushed packets (`nan`
    before anything was pushed).

### `rtcmedia.samplebuilder`

- `Sample` — `data` (bytes) and `duration` (seconds).
- `SampleBuilder(max_late, depacketizer, sample_rate,
  packet_release_handler=None, on_packet_dropped=None)` — keeps packets in a
  window of `2 * max_late + 1` slots (`max_late` is clamped to 2..32767) and
  assembles them into samples, tolerating reordering and loss.
  - `push(pkt)`
  - `pop()` / `pop_with_timestamp()` — the next complete sample (and its RTP
    timestamp), or `None` / `(None, 0)`.
  - `force_pop_with_timestamp()` — skips past missing packets; once it
    returns `(None, 0)` the builder is empty.
  - `pop_packets()` / `force_pop_packets()` — the raw packets of the next
    sample; the release handler is not called for them.
  - `check()` — verifies internal invariants, raising `RuntimeError`.

### `rtcmedia.oggreader`

- `OggReader(stream, do_checksum=True)` — reads the Opus identification page
  into `reader.header` (an `OggHeader`), skips the comment page, then
  `read_packet()` returns one Opus packet at a time and raises `EOFError` at
  the end of the stream. Iterating over the reader yields packets until the
  end. Malformed streams raise `OggError`.
- `parse_packet_duration(data)` — the duration in seconds of an Opus packet,
  from its TOC byte; raises `InvalidPacketError` for bad packets or
  durations over 120 ms.

### `rtcmedia.synchronizer`

All durations and presentation timestamps are integers in nanoseconds.

- `TrackRemote(id, kind, ssrc, clock_rate, mime_type="")` with `kind` a
  `TrackKind` (`AUDIO` or `VIDEO`).
- `Synchronizer(on_started=None)` — shared by all tracks of a session.
  `add_track(track, identity)` returns a `TrackSynchronizer`;
  `remove_track(track_id)`, `on_rtcp(packet)` (uses `SenderReport(ssrc,
  ntp_time, rtp_time)` to align the tracks of one participant), `end()`,
  `get_started_at()`, `get_ended_at()`.
- `TrackSynchronizer` — `initialize(pkt)` on the first packet, then
  `get_pts(pkt)` for every packet in order. `get_pts` raises
  `BackwardsPtsError` when a timestamp would go backwards and `EndOfStream`
  for packets past the end set by `Synchronizer.end()`. `insert_frame(pkt)`
  and `insert_frame_before(pkt, next_pkt)` stamp injected frames;
  `get_frame_duration()` and `get_track_stats()` report timing.

### `rtcmedia.interceptor`

- `LimitSizeInterceptor.bind_local_stream(stream, writer)` wraps a writer
  callable `(header, payload, attributes)` so that payloads over 1200 bytes
  raise `PayloadSizeTooLargeError`. `LimitSizeInterceptorFactory` creates
  them.
- `PacketPool(*sizes)` — `get(size)` returns a `(buffer, pool)` pair from the
  smallest pool large enough, or a fresh buffer and `None`. A pooled buffer
  can be given back with `pool.put(buffer)`.

### `rtcmedia.regions`

- `is_cloud(hostname)` and `parse_cloud_url(server_url)` recognise cloud
  server hostnames; `parse_cloud_url` raises `RegionError` otherwise.
- `RegionUrlProvider(timeout=5.0)` — `refresh_region_settings(hostname,
  token)` fetches `https://<hostname>/settings/regions` with a bearer token
  (cached for three seconds) and expects a JSON object with a `regions` list
  of objects holding a `url`. `pop_best_url(hostname, token)` removes and
  returns the first remaining URL, raising `RegionError` when none are left.

## Examples

Reading Opus packets:

```python
from rtcmedia.oggreader import OggReader, parse_packet_duration

with open("audio.ogg", "rb") as fp:
    reader = OggReader(fp)
    for packet in reader:
        print(len(packet), parse_packet_duration(packet))
```

Jitter buffering:

```python
from rtcmedia.jitter import Depacketizer, JitterBuffer

buffer = JitterBuffer(Depacketizer(), clock_rate=90000, max_latency=0.2)
buffer.push(packet)
for pkt in buffer.pop(False):
    handle(pkt)
```

Presentation timestamps:

```python
from rtcmedia.jitter import RtpPacket
from rtcmedia.synchronizer import Synchronizer, TrackKind, TrackRemote

sync = Synchronizer()
track = sync.add_track(TrackRemote("video", TrackKind.VIDEO, 1234, 90000), "participant")
track.initialize(RtpPacket(sequence_number=100, timestamp=10000))
pts = track.get_pts(RtpPacket(sequence_number=100, timestamp=10000))
```

Region lookup:

```python
from rtcmedia.regions import RegionUrlProvider, parse_cloud_url

host = parse_cloud_url(server_url)
provider = RegionUrlProvider()
provider.refresh_region_settings(host, "token")
url = provider.pop_best_url(host, "token")
```

## What this package does not do

It is a library of stream-handling pieces only. It does not open media
connections, negotiate sessions, encrypt or send RTP, or parse RTCP from the
wire (sender reports are passed in as `SenderReport` values). It ships no
codec-specific depacketizers, no readers for video container formats, and no
command-line program.

## Tests

```
pip install ".[test]"
pytest
```