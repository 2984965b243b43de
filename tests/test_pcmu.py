from sipcall.rtp.pcmu import (
    SAMPLE_RATE,
    SILENCE,
    linear_to_ulaw,
    render_silence,
    render_tone,
)


def test_ulaw_silence():
    assert linear_to_ulaw(0) == SILENCE


def test_ulaw_positive_max():
    # In complemented μ-law, bit 7 set = positive
    assert linear_to_ulaw(32767) == 0x80


def test_ulaw_negative_max():
    assert linear_to_ulaw(-32768) == 0x00


def test_ulaw_negative():
    result = linear_to_ulaw(-1000)
    # In complemented μ-law, bit 7 clear = negative
    assert not (result & 0x80)


def test_ulaw_is_monotonic_for_positive_input():
    # Larger magnitude means a smaller complemented code
    codes = [linear_to_ulaw(s) for s in range(0, 32768, 512)]
    assert codes == sorted(codes, reverse=True)


def test_render_silence():
    assert render_silence(160) == b"\xff" * 160


def test_render_tone_length_and_content():
    buf = render_tone(440.0)
    assert len(buf) == SAMPLE_RATE
    assert buf[0] == SILENCE  # sin(0)
    assert any(b != SILENCE for b in buf[:20])
