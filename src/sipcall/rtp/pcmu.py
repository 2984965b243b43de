"""μ-law (G.711 PCMU) encoder and synthetic payload rendering."""

import math

SAMPLE_RATE = 8000
ULAW_BIAS = 0x84
ULAW_CLIP = 32635
SILENCE = 0xFF


def linear_to_ulaw(sample: int) -> int:
    """Convert a 16-bit signed PCM sample to 8-bit μ-law."""
    sign = 0x80 if sample < 0 else 0
    magnitude = min(abs(sample), ULAW_CLIP) + ULAW_BIAS

    # Segment number = position of the highest set bit above bit 7
    exponent = 7
    while exponent > 0 and not magnitude & (0x80 << exponent):
        exponent -= 1

    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def render_silence(n_samples: int) -> bytes:
    return bytes([SILENCE]) * n_samples


def render_tone(
    freq_hz: float, duration_s: float = 1.0, amplitude: int = 8000
) -> bytes:
    """Render a sine tone as μ-law bytes.

    ``duration_s`` should be a whole number of periods so the buffer loops
    without a click; 1 second works for any integer frequency.
    """
    n = int(SAMPLE_RATE * duration_s)
    step = 2.0 * math.pi * freq_hz / SAMPLE_RATE
    return bytes(linear_to_ulaw(int(amplitude * math.sin(step * i))) for i in range(n))
