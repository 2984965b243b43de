"""RTP packet construction, paced sending and inbound classification."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import struct
import time
from collections.abc import Callable

from sipcall.rtp.pcmu import render_silence
from sipcall.sip.errors import SocketError

logger = logging.getLogger(__name__)

RTP_VERSION = 2
RTP_HEADER_LEN = 12
PAYLOAD_TYPE_PCMU = 0
PAYLOAD_TYPE_PCMA = 8
PTIME_MS = 20
SAMPLES_PER_PACKET = 160  # 8000 Hz * 20ms
RECEIVE_TIMEOUT = 5.0
_LOOPBACK = ("127.0.0.1", "0.0.0.0")


def build_rtp_packet(
    seq: int, timestamp: int, ssrc: int, payload: bytes, *, marker: bool = False
) -> bytes:
    """Build a 12-byte RTP header + payload."""
    second_byte = PAYLOAD_TYPE_PCMU | (0x80 if marker else 0)
    header = struct.pack(
        "!BBHII",
        RTP_VERSION << 6,  # V=2, P=0, X=0, CC=0
        second_byte,
        seq & 0xFFFF,
        timestamp & 0xFFFFFFFF,
        ssrc & 0xFFFFFFFF,
    )
    return header + payload


@dataclasses.dataclass
class RtpHeader:
    version: int
    marker: bool
    payload_type: int
    seq: int
    timestamp: int
    ssrc: int


def parse_rtp_header(packet: bytes) -> RtpHeader | None:
    """Decode the fixed RTP header; None when the packet is too short."""
    if len(packet) < RTP_HEADER_LEN:
        return None
    first, second, seq, timestamp, ssrc = struct.unpack(
        "!BBHII", packet[:RTP_HEADER_LEN]
    )
    return RtpHeader(
        version=first >> 6,
        marker=bool(second & 0x80),
        payload_type=second & 0x7F,
        seq=seq,
        timestamp=timestamp,
        ssrc=ssrc,
    )


def wallclock_timestamp() -> int:
    """RTP timestamp base derived from wall-clock milliseconds at 8 kHz."""
    return (int(time.time() * 1000) * 8) & 0xFFFFFFFF


class RtpEngine(asyncio.DatagramProtocol):
    """Owns the RTP socket and at most one media session at a time.

    The socket is bound for the lifetime of the client so its port can be
    advertised in SDP before any call exists. ``start`` begins a session
    towards a remote endpoint; ``stop`` ends it and is safe to call anytime.
    """

    def __init__(
        self,
        *,
        local_ip: str = "127.0.0.1",
        audio_buf: bytes | None = None,
        on_timeout: Callable[[], None] | None = None,
        receive_timeout: float = RECEIVE_TIMEOUT,
    ) -> None:
        self._transport: asyncio.DatagramTransport | None = None
        self.local_ip = local_ip
        self.local_port = 0
        self.remote_addr: tuple[str, int] | None = None
        self._audio_buf = audio_buf or render_silence(SAMPLES_PER_PACKET)
        self._offset = 0
        self._on_timeout = on_timeout
        self._receive_timeout = receive_timeout
        self._task: asyncio.Task[None] | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self.ssrc = random.randint(0, 0xFFFFFFFF)
        self.seq = random.randint(0, 0xFFFF)
        self.timestamp = wallclock_timestamp()
        self.packets_sent = 0
        self.packets_received = 0
        self.last_received: float | None = None
        self.timed_out = False

    # -- asyncio.DatagramProtocol ------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self.local_port = sockname[1]
        logger.info("RTP socket bound to port %d", self.local_port)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("RTP socket lost: %s", exc)
        self.stop()
        self._transport = None

    def error_received(self, exc: Exception) -> None:
        logger.warning("RTP socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if not self.running:
            logger.debug("Dropping RTP from %s:%d outside a session", addr[0], addr[1])
            return
        self.last_received = time.monotonic()
        self.packets_received += 1
        self._arm_watchdog()

        from_remote = self.remote_addr is not None and addr[0] == self.remote_addr[0]
        if from_remote and self.packets_received == 1:
            logger.info("RTP media flowing from %s:%d", addr[0], addr[1])
        elif not from_remote and addr[0] not in (self.local_ip, *_LOOPBACK):
            logger.warning(
                "Unexpected RTP from %s:%d (expected %s)",
                addr[0],
                addr[1],
                self.remote_addr,
            )

        header = parse_rtp_header(data)
        if header is None:
            logger.warning("Short RTP packet (%d bytes) from %s", len(data), addr)
        elif header.version != RTP_VERSION or header.payload_type not in (
            PAYLOAD_TYPE_PCMU,
            PAYLOAD_TYPE_PCMA,
        ):
            logger.warning(
                "Unexpected RTP header: v=%d pt=%d seq=%d ts=%d",
                header.version,
                header.payload_type,
                header.seq,
                header.timestamp,
            )

    # -- session control ---------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None

    def next_packet(self) -> bytes:
        """Build the next outbound packet and advance sequence/timestamp."""
        end = self._offset + SAMPLES_PER_PACKET
        payload = self._audio_buf[self._offset : end]
        if len(payload) < SAMPLES_PER_PACKET:
            # Wrap around the pre-rendered buffer
            end = SAMPLES_PER_PACKET - len(payload)
            payload += self._audio_buf[:end]
        self._offset = end % len(self._audio_buf)

        packet = build_rtp_packet(self.seq, self.timestamp, self.ssrc, payload)
        self.seq = (self.seq + 1) & 0xFFFF
        self.timestamp = (self.timestamp + SAMPLES_PER_PACKET) & 0xFFFFFFFF
        return packet

    def start(self, remote_host: str, remote_port: int) -> None:
        if self.running:
            self.stop()
        self.remote_addr = (remote_host, remote_port)
        self.ssrc = random.randint(0, 0xFFFFFFFF)
        self.seq = random.randint(0, 0xFFFF)
        self.timestamp = wallclock_timestamp()
        self._offset = 0
        self.packets_sent = 0
        self.packets_received = 0
        self.timed_out = False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._send_loop())
        self._arm_watchdog()
        logger.info(
            "RTP stream started: %s:%d -> %s:%d",
            self.local_ip,
            self.local_port,
            remote_host,
            remote_port,
        )

    def stop(self) -> tuple[int, int]:
        """End the session; returns the (sent, received) packet counts."""
        counts = (self.packets_sent, self.packets_received)
        was_running = self.running
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        self.remote_addr = None
        self.last_received = None
        self.timestamp = wallclock_timestamp()
        self.packets_sent = 0
        self.packets_received = 0
        if was_running:
            logger.info("RTP stream stopped (sent=%d received=%d)", *counts)
        return counts

    def close(self) -> None:
        self.stop()
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def _send_loop(self) -> None:
        next_send_time = time.monotonic()
        while self.remote_addr is not None:
            packet = self.next_packet()
            if self._transport is not None:
                try:
                    self._transport.sendto(packet, self.remote_addr)
                except OSError as exc:
                    logger.warning("Failed to send RTP packet: %s", exc)
                else:
                    self.packets_sent += 1
                    if self.packets_sent % 100 == 0:
                        logger.debug(
                            "RTP: sent %d, received %d",
                            self.packets_sent,
                            self.packets_received,
                        )

            # Absolute deadlines keep the 20ms cadence from drifting
            next_send_time += PTIME_MS / 1000.0
            await asyncio.sleep(max(0.0, next_send_time - time.monotonic()))

    def _arm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self._receive_timeout, self._fire_watchdog)

    def _fire_watchdog(self) -> None:
        self._watchdog = None
        if not self.running:
            return
        self.timed_out = True
        logger.warning(
            "RTP timeout: nothing received for %.0fs "
            "(local %s:%d, remote %s, sent=%d, received=%d)",
            self._receive_timeout,
            self.local_ip,
            self.local_port,
            self.remote_addr,
            self.packets_sent,
            self.packets_received,
        )
        if self._on_timeout is not None:
            self._on_timeout()


async def open_rtp_engine(
    host: str = "0.0.0.0", port: int = 0, **kwargs: object
) -> RtpEngine:
    """Bind an RTP socket and return its engine."""
    loop = asyncio.get_running_loop()
    engine = RtpEngine(**kwargs)  # type: ignore[arg-type]
    try:
        await loop.create_datagram_endpoint(lambda: engine, local_addr=(host, port))
    except OSError as exc:
        raise SocketError(f"Failed to bind RTP socket: {exc}") from exc
    return engine
