"""Outgoing RTP helpers: payload size limiting and pooled packet buffers."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

MAX_PAYLOAD_SIZE = 1200

RtpWriter = Callable[[Any, bytes, Any], int]


class PayloadSizeTooLargeError(ValueError):
    """Raised when a packetized payload exceeds MAX_PAYLOAD_SIZE."""

    def __init__(self) -> None:
        super().__init__(
            f"packetization payload size should not greater than {MAX_PAYLOAD_SIZE} bytes"
        )


class LimitSizeInterceptor:
    """Rejects outgoing RTP packets whose payload is too large."""

    def bind_local_stream(self, stream: Any, writer: RtpWriter) -> RtpWriter:
        def write(header: Any, payload: bytes, attributes: Any = None) -> int:
            if len(payload) > MAX_PAYLOAD_SIZE:
                raise PayloadSizeTooLargeError()
            return writer(header, payload, attributes)

        return write


class LimitSizeInterceptorFactory:
    """Creates LimitSizeInterceptor instances."""

    def new_interceptor(self, interceptor_id: str) -> LimitSizeInterceptor:
        return LimitSizeInterceptor()


class _SizedPool:
    """Free list of reusable buffers of one fixed size."""

    def __init__(self, size: int) -> None:
        self.size = size
        self._free: List[bytearray] = []
        self._lock = threading.Lock()

    def get(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
        return bytearray(self.size)

    def put(self, buf: bytearray) -> None:
        with self._lock:
            self._free.append(buf)


class PacketPool:
    """Hands out buffers from pools keyed by buffer size."""

    def __init__(self, *args: int) -> None:
        self._pools: Dict[int, _SizedPool] = {size: _SizedPool(size) for size in args}

    def get(self, size: int) -> Tuple[bytearray, Optional[_SizedPool]]:
        """Return a buffer of at least ``size`` bytes and the pool it came from.

        When no pool is large enough a fresh buffer of exactly ``size`` bytes
        is returned with ``None`` as its pool.
        """
        for pool_size in sorted(self._pools):
            if pool_size >= size:
                pool = self._pools[pool_size]
                return pool.get(), pool
        return bytearray(size), None