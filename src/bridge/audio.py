"""
Audio conversion utilities for the Twilio <-> OpenAI Realtime bridge.

Pipeline for synthesized speech:
- OpenAI Realtime emits base64 PCM16 little-endian at 24kHz (mono)
- Naive integer decimation down to 8kHz
- G.711 mu-law encoding (bias 132, clip 32635)
- 160-byte frames (20ms) for Twilio Media Streams

Known limitation: `downsample` keeps every Nth sample without a low-pass
filter, so content above 4kHz aliases into the telephony band.
"""

import base64
import binascii
from typing import Generator, Sequence, Union

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

TWILIO_SAMPLE_RATE = 8000
REALTIME_SAMPLE_RATE = 24000  # OpenAI Realtime pcm16 output
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

ULAW_BIAS = 0x84  # 132
ULAW_CLIP = 32635

SampleInput = Union[Sequence[int], np.ndarray]


class AudioDecodeError(ValueError):
    """Raised when an audio payload cannot be decoded."""
    pass


def encode_ulaw_sample(sample: int) -> int:
    """
    Encode one linear PCM16 sample as a G.711 mu-law byte.

    Args:
        sample: Linear sample; values outside int16 are clamped

    Returns:
        Mu-law byte value (0-255)
    """
    if sample > 32767:
        sample = 32767
    if sample < -32768:
        sample = -32768

    sign = (sample >> 8) & 0x80
    if sample < 0:
        sample = -sample
    if sample > ULAW_CLIP:
        sample = ULAW_CLIP
    sample += ULAW_BIAS

    exponent = 7
    exp_mask = 0x4000
    while (sample & exp_mask) == 0 and exponent > 0:
        exponent -= 1
        exp_mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def encode_ulaw(samples: SampleInput) -> bytes:
    """
    Encode linear PCM16 samples as G.711 mu-law bytes.

    Vectorized form of `encode_ulaw_sample`; the output is identical for
    every int16 input.

    Args:
        samples: Linear PCM16 samples

    Returns:
        Mu-law bytes, one per sample
    """
    x = np.clip(np.asarray(samples, dtype=np.int32), -32768, 32767)
    if x.size == 0:
        return b""

    sign = np.where(x < 0, 0x80, 0)
    magnitude = np.minimum(np.abs(x), ULAW_CLIP) + ULAW_BIAS

    # Magnitude is always >= 132 here, so bit 7 is the lowest possible top bit.
    exponent = np.zeros_like(magnitude)
    for exp in range(1, 8):
        exponent = np.where(magnitude >= (1 << (exp + 7)), exp, exponent)

    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    ulaw = np.bitwise_not(sign | (exponent << 4) | mantissa) & 0xFF
    return ulaw.astype(np.uint8).tobytes()


def downsample(rate_in: int, rate_out: int, samples: SampleInput) -> np.ndarray:
    """
    Downsample by naive decimation: keep every Nth sample, drop the rest.

    No anti-aliasing filter is applied. Output length is
    ``len(samples) // (rate_in // rate_out)``.

    Args:
        rate_in: Source sample rate in Hz
        rate_out: Target sample rate in Hz
        samples: Linear PCM16 samples at `rate_in`

    Returns:
        int16 samples at `rate_out`

    Raises:
        ValueError: If `rate_in` is not an integer multiple of `rate_out`
    """
    pcm = np.asarray(samples, dtype=np.int16)
    if rate_in == rate_out:
        return pcm
    if rate_out <= 0 or rate_in < rate_out or rate_in % rate_out != 0:
        raise ValueError(
            f"Unsupported decimation {rate_in}Hz -> {rate_out}Hz (needs an integer ratio)"
        )

    ratio = rate_in // rate_out
    usable = (pcm.size // ratio) * ratio
    return pcm[:usable:ratio]


def decode_base64_pcm16(payload: str) -> np.ndarray:
    """
    Decode a base64 payload into little-endian PCM16 samples.

    A trailing odd byte is dropped (truncated to whole samples).

    Args:
        payload: Base64 string of PCM16 LE audio

    Returns:
        int16 samples

    Raises:
        AudioDecodeError: If the payload is not valid base64
    """
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise AudioDecodeError(f"Invalid base64 audio payload: {e}") from e

    if len(raw) % 2:
        logger.debug("Truncating odd-length PCM16 payload", length=len(raw))
        raw = raw[:-1]

    return np.frombuffer(raw, dtype="<i2").astype(np.int16)


def pcm16_base64_to_ulaw(
    payload: str,
    source_rate: int = REALTIME_SAMPLE_RATE,
    target_rate: int = TWILIO_SAMPLE_RATE,
) -> bytes:
    """
    Convert a base64 PCM16 delta from OpenAI Realtime to Twilio mu-law.

    Args:
        payload: Base64 PCM16 LE audio at `source_rate`
        source_rate: Upstream sample rate (24kHz for OpenAI Realtime)
        target_rate: Telephony sample rate

    Returns:
        Mu-law bytes at `target_rate`
    """
    pcm = decode_base64_pcm16(payload)
    return encode_ulaw(downsample(source_rate, target_rate, pcm))


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, 20ms frames = 160 bytes of mu-law at 8kHz. The final chunk
    may be shorter; it is never padded.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Maximum size of each chunk in bytes

    Yields:
        Consecutive audio chunks
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    for i in range(0, len(audio_bytes), chunk_size):
        yield bytes(audio_bytes[i:i + chunk_size])


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    return num_samples / sample_rate * 1000
