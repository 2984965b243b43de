import asyncio
import struct

import pytest

from sipcall.rtp.stream import (
    RTP_HEADER_LEN,
    SAMPLES_PER_PACKET,
    RtpEngine,
    build_rtp_packet,
    open_rtp_engine,
    parse_rtp_header,
)

from .conftest import FakeTransport


def test_rtp_packet_header():
    packet = build_rtp_packet(
        seq=1,
        timestamp=160,
        ssrc=0xDEADBEEF,
        payload=b"\x00" * 160,
    )
    first_byte, second_byte, seq, ts, ssrc = struct.unpack("!BBHII", packet[:12])
    assert first_byte == 0x80  # V=2, P=0, X=0, CC=0
    assert second_byte == 0  # PT=0 (PCMU), M=0
    assert seq == 1
    assert ts == 160
    assert ssrc == 0xDEADBEEF
    assert len(packet) == RTP_HEADER_LEN + 160


def test_rtp_marker_bit():
    """Marker bit is the high bit of the second byte; PT stays 0."""
    marked = build_rtp_packet(seq=0, timestamp=0, ssrc=1, payload=b"", marker=True)
    assert marked[1] == 0x80


def test_parse_rtp_header():
    header = parse_rtp_header(build_rtp_packet(7, 320, 99, b"\xff" * 160))
    assert header is not None
    assert (header.version, header.payload_type) == (2, 0)
    assert (header.seq, header.timestamp, header.ssrc) == (7, 320, 99)
    assert parse_rtp_header(b"\x80\x00") is None


def _engine() -> RtpEngine:
    engine = RtpEngine(audio_buf=b"\x01" * 200)
    engine.ssrc = 1234
    engine.seq = 0xFFFE
    engine.timestamp = 0xFFFFFF00
    return engine


def test_sequence_wraps_at_16_bits():
    engine = _engine()
    seqs = [parse_rtp_header(engine.next_packet()).seq for _ in range(4)]  # type: ignore[union-attr]
    assert seqs == [0xFFFE, 0xFFFF, 0, 1]


def test_timestamp_advances_by_frame_and_wraps():
    engine = _engine()
    stamps = [parse_rtp_header(engine.next_packet()).timestamp for _ in range(3)]  # type: ignore[union-attr]
    assert stamps[0] == 0xFFFFFF00
    assert stamps[1] == (0xFFFFFF00 + SAMPLES_PER_PACKET) & 0xFFFFFFFF
    assert stamps[2] == (0xFFFFFF00 + 2 * SAMPLES_PER_PACKET) & 0xFFFFFFFF


def test_payload_wraps_around_audio_buffer():
    engine = RtpEngine(audio_buf=bytes(range(100)) * 2)  # 200 bytes
    engine.next_packet()
    second = engine.next_packet()[RTP_HEADER_LEN:]
    assert len(second) == SAMPLES_PER_PACKET
    # bytes 160..199 then 0..119 of the buffer
    assert second[:40] == (bytes(range(100)) * 2)[160:]
    assert second[40:] == (bytes(range(100)) * 2)[:120]


def test_default_payload_is_silence():
    engine = RtpEngine()
    assert engine.next_packet()[RTP_HEADER_LEN:] == b"\xff" * SAMPLES_PER_PACKET


def test_stop_when_idle_is_noop():
    engine = RtpEngine()
    assert engine.stop() == (0, 0)
    assert engine.stop() == (0, 0)


@pytest.mark.asyncio
async def test_send_loop_paces_packets():
    transport = FakeTransport()
    engine = RtpEngine()
    engine.connection_made(transport)
    engine.start("10.0.0.9", 30000)
    first_ssrc = engine.ssrc
    await asyncio.sleep(0.11)
    sent, _ = engine.stop()
    # One immediately, then every 20ms
    assert 4 <= sent <= 8
    assert transport.sent[0][1] == ("10.0.0.9", 30000)
    headers = [parse_rtp_header(data) for data, _ in transport.sent]
    assert {h.ssrc for h in headers} == {first_ssrc}  # type: ignore[union-attr]
    seqs = [h.seq for h in headers]  # type: ignore[union-attr]
    assert all((b - a) & 0xFFFF == 1 for a, b in zip(seqs, seqs[1:]))
    assert not engine.running


@pytest.mark.asyncio
async def test_stop_resets_counters_and_is_idempotent():
    engine = RtpEngine()
    engine.connection_made(FakeTransport())
    engine.start("10.0.0.9", 30000)
    engine.datagram_received(
        build_rtp_packet(1, 0, 5, b"\xff" * 160), ("10.0.0.9", 30000)
    )
    await asyncio.sleep(0)
    sent, received = engine.stop()
    assert received == 1
    assert engine.packets_received == 0
    assert engine.remote_addr is None
    assert engine.stop() == (0, 0)


@pytest.mark.asyncio
async def test_unexpected_packets_are_still_counted():
    engine = RtpEngine()
    engine.connection_made(FakeTransport())
    engine.start("10.0.0.9", 30000)
    engine.datagram_received(b"\x00\x01", ("10.9.9.9", 1))
    # PT 96 is logged as unexpected
    bad_pt = b"\x80\x60" + b"\x00" * 10
    engine.datagram_received(bad_pt, ("10.0.0.9", 30000))
    assert engine.packets_received == 2
    engine.stop()


@pytest.mark.asyncio
async def test_packets_outside_a_session_are_not_counted():
    engine = RtpEngine()
    engine.connection_made(FakeTransport())
    engine.datagram_received(build_rtp_packet(1, 0, 5, b""), ("10.0.0.9", 30000))
    assert engine.packets_received == 0
    engine.start("10.0.0.9", 30000)
    engine.stop()
    # A stray packet after stop() must not leak into the next stop() counts
    engine.datagram_received(build_rtp_packet(2, 0, 5, b""), ("10.0.0.9", 30000))
    assert engine.last_received is None
    assert engine.stop() == (0, 0)


@pytest.mark.asyncio
async def test_restart_resets_session_state():
    engine = RtpEngine()
    engine.connection_made(FakeTransport())
    engine.start("10.0.0.9", 30000)
    engine.seq = 0xFFFF
    engine.packets_sent = 50
    engine.stop()
    engine.start("10.0.0.9", 30002)
    assert engine.packets_sent == 0
    assert engine.timed_out is False
    assert engine.remote_addr == ("10.0.0.9", 30002)
    engine.stop()


@pytest.mark.asyncio
async def test_receive_watchdog_is_diagnostic():
    """Silence past the timeout flags the session but keeps it running."""
    fired: list[bool] = []
    engine = RtpEngine(receive_timeout=0.05, on_timeout=lambda: fired.append(True))
    engine.connection_made(FakeTransport())
    engine.start("10.0.0.9", 30000)
    await asyncio.sleep(0.1)
    assert engine.timed_out
    assert fired == [True]
    assert engine.running
    engine.stop()


@pytest.mark.asyncio
async def test_inbound_packets_rearm_watchdog():
    engine = RtpEngine(receive_timeout=0.05)
    engine.connection_made(FakeTransport())
    engine.start("10.0.0.9", 30000)
    for _ in range(4):
        await asyncio.sleep(0.02)
        engine.datagram_received(build_rtp_packet(1, 0, 5, b""), ("10.0.0.9", 30000))
    assert not engine.timed_out
    engine.stop()


@pytest.mark.asyncio
async def test_open_rtp_engine_binds_ephemeral_port():
    engine = await open_rtp_engine("127.0.0.1", 0)
    try:
        assert engine.local_port > 0
    finally:
        engine.close()
