"""Reads Opus packets, one at a time, from an Ogg container."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Tuple

PAGE_HEADER_TYPE_BEGINNING_OF_STREAM = 0x02
MAX_FRAME_DURATION = 0.120

_PAGE_SIGNATURE = b"OggS"
_ID_PAGE_SIGNATURE = b"OpusHead"
_PAGE_HEADER = struct.Struct("<4sBBQIIIB")
_ID_PAGE_PAYLOAD_LENGTH = 19
_CHECKSUM_SLICE = slice(22, 26)
_POLY = 0x04C11DB7
_U32 = 0xFFFFFFFF
_MAX_FRAME_DURATION_US = 120_000

# Frame duration in microseconds for each TOC configuration number.
_DURATIONS_US = (
    10_000, 20_000, 40_000, 60_000,  # SILK-only
    10_000, 20_000, 40_000, 60_000,
    10_000, 20_000, 40_000, 60_000,
    10_000, 20_000,  # hybrid
    10_000, 20_000,
    2_500, 5_000, 10_000, 20_000,  # CELT-only
    2_500, 5_000, 10_000, 20_000,
    2_500, 5_000, 10_000, 20_000,
    2_500, 5_000, 10_000, 20_000,
)


class OggError(Exception):
    """The stream is not a well-formed Ogg Opus stream."""


class InvalidPacketError(OggError, ValueError):
    """An Opus packet cannot be parsed."""

    def __init__(self, message: str = "invalid opus packet") -> None:
        super().__init__(message)


def parse_packet_duration(data: bytes) -> float:
    """Return the duration in seconds of an Opus packet, from its TOC byte."""
    if len(data) < 1:
        raise InvalidPacketError()
    toc = data[0]
    code = toc & 3
    if code == 0:
        frames = 1
    elif code in (1, 2):
        frames = 2
    else:
        if len(data) < 2:
            raise InvalidPacketError()
        frames = data[1] & 63
    duration_us = frames * _DURATIONS_US[toc >> 3]
    if duration_us > _MAX_FRAME_DURATION_US:
        raise InvalidPacketError()
    return duration_us / 1_000_000


def _generate_checksum_table() -> Tuple[int, ...]:
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            r = (r << 1) ^ _POLY if r & 0x80000000 else r << 1
            r &= _U32
        table.append(r)
    return tuple(table)


_CHECKSUM_TABLE = _generate_checksum_table()


def _checksum(data: bytes, crc: int = 0) -> int:
    for byte in data:
        crc = ((crc << 8) & _U32) ^ _CHECKSUM_TABLE[((crc >> 24) ^ byte) & 0xFF]
    return crc


@dataclass
class OggHeader:
    """Metadata from the Opus identification page."""

    version: int
    channels: int
    pre_skip: int
    sample_rate: int
    output_gain: int
    channel_map: int


@dataclass
class OggPage:
    """One page of an Ogg stream."""

    signature: bytes
    version: int
    header_type: int
    granule_position: int
    serial: int
    index: int
    segments_table: bytes
    payload: bytes


class OggReader:
    """Splits Ogg pages into individual Opus packets.

    A page can hold up to a second of audio; ``read_packet`` returns one
    packet at a time so each fits in an RTP packet.
    """

    def __init__(self, stream: BinaryIO, do_checksum: bool = True) -> None:
        if stream is None:
            raise OggError("stream is nil")
        self._stream = stream
        self._do_checksum = do_checksum
        self._page: Optional[OggPage] = None
        self._segment = 0
        self._offset = 0
        self.header = self._read_headers()
        # the comment page carries nothing we need
        try:
            self._read_page()
        except (OggError, EOFError):
            pass

    def _read_full(self, size: int) -> bytes:
        if size == 0:
            return b""
        chunks = []
        remaining = size
        while remaining:
            chunk = self._stream.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        data = b"".join(chunks)
        if not data:
            raise EOFError("end of ogg stream")
        if len(data) < size:
            raise OggError("unexpected end of stream")
        return data

    def _read_headers(self) -> OggHeader:
        page = self._read_page()
        if page.signature != _PAGE_SIGNATURE:
            raise OggError("bad header signature")
        if page.header_type != PAGE_HEADER_TYPE_BEGINNING_OF_STREAM:
            raise OggError("wrong header, expected beginning of stream")
        if len(page.payload) != _ID_PAGE_PAYLOAD_LENGTH:
            raise OggError("payload for id page must be 19 bytes")
        if page.payload[:8] != _ID_PAGE_SIGNATURE:
            raise OggError("bad payload signature")
        version, channels, pre_skip, sample_rate, output_gain, channel_map = (
            struct.unpack("<BBHIHB", page.payload[8:19])
        )
        return OggHeader(
            version=version,
            channels=channels,
            pre_skip=pre_skip,
            sample_rate=sample_rate,
            output_gain=output_gain,
            channel_map=channel_map,
        )

    def _read_page(self) -> OggPage:
        raw_header = self._read_full(_PAGE_HEADER.size)
        (
            signature,
            version,
            header_type,
            granule,
            serial,
            index,
            expected,
            segment_count,
        ) = _PAGE_HEADER.unpack(raw_header)
        segments_table = self._read_full(segment_count)
        payload = self._read_full(sum(segments_table))

        if self._do_checksum:
            zeroed = bytearray(raw_header)
            zeroed[_CHECKSUM_SLICE] = b"\x00\x00\x00\x00"
            crc = _checksum(zeroed)
            crc = _checksum(segments_table, crc)
            crc = _checksum(payload, crc)
            if crc != expected:
                raise OggError("expected and actual checksum do not match")

        return OggPage(
            signature=signature,
            version=version,
            header_type=header_type,
            granule_position=granule,
            serial=serial,
            index=index,
            segments_table=segments_table,
            payload=payload,
        )

    def read_packet(self) -> bytes:
        """Return the next Opus packet; raises EOFError at the end of the stream."""
        while self._page is None:
            page = self._read_page()
            if page.segments_table:
                self._page = page
                self._segment = 0
                self._offset = 0
        page = self._page

        size = 0
        while True:
            segment_size = page.segments_table[self._segment]
            size += segment_size
            self._segment += 1
            if self._segment == len(page.segments_table):
                self._page = None
                break
            if segment_size != 255:
                break

        packet = page.payload[self._offset : self._offset + size]
        self._offset += size
        return bytes(packet)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                yield self.read_packet()
            except EOFError:
                return