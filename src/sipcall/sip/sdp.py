"""SDP offer/answer generation and parsing for a single audio stream."""

from __future__ import annotations

import dataclasses
import random

from sipcall.sip.errors import SdpParseError

PT_PCMU = 0
PT_PCMA = 8
PT_TELEPHONE_EVENT = 101


@dataclasses.dataclass
class SdpDescription:
    """Routable audio endpoint extracted from an SDP body."""

    connection_address: str
    audio_port: int
    payload_types: list[int] = dataclasses.field(default_factory=list)


def parse_sdp(sdp: str) -> SdpDescription:
    """Extract the audio RTP endpoint from an SDP body.

    Both ``c=IN IP4`` and ``m=audio`` are required; a description missing
    either is not routable and raises SdpParseError.
    """
    connection_address: str | None = None
    audio_port: int | None = None
    payload_types: list[int] = []

    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("c=IN IP4 "):
            # c=IN IP4 <address>[/<ttl>]
            addr = line[len("c=IN IP4 ") :].split("/")[0].strip()
            if addr:
                connection_address = addr
        elif line.startswith("m=audio "):
            # m=audio <port> RTP/AVP <fmt> ...
            parts = line.split()
            try:
                audio_port = int(parts[1].split("/")[0])
            except (IndexError, ValueError) as exc:
                raise SdpParseError(f"bad media line: {line!r}") from exc
            payload_types = [int(p) for p in parts[3:] if p.isdigit()]

    if connection_address is None:
        raise SdpParseError("SDP has no c=IN IP4 connection line")
    if not audio_port:
        raise SdpParseError("SDP has no usable m=audio port")
    return SdpDescription(
        connection_address=connection_address,
        audio_port=audio_port,
        payload_types=payload_types,
    )


def _build_sdp(
    local_ip: str, rtp_port: int, username: str, payload_types: list[int]
) -> str:
    session_id = random.randint(100000000, 999999999)
    fmt = " ".join(str(pt) for pt in payload_types)
    lines = [
        "v=0",
        f"o={username} {session_id} {session_id} IN IP4 {local_ip}",
        "s=sipcall",
        f"c=IN IP4 {local_ip}",
        "t=0 0",
        f"m=audio {rtp_port} RTP/AVP {fmt}",
        "a=rtpmap:0 PCMU/8000",
        "a=rtpmap:8 PCMA/8000",
    ]
    if PT_TELEPHONE_EVENT in payload_types:
        lines += [
            f"a=rtpmap:{PT_TELEPHONE_EVENT} telephone-event/8000",
            f"a=fmtp:{PT_TELEPHONE_EVENT} 0-15",
        ]
    lines += ["a=ptime:20", "a=sendrecv", ""]
    return "\r\n".join(lines)


def build_sdp_offer(local_ip: str, rtp_port: int, username: str = "-") -> str:
    """Build an INVITE offer advertising PCMU, PCMA and telephone-event."""
    return _build_sdp(
        local_ip, rtp_port, username, [PT_PCMU, PT_PCMA, PT_TELEPHONE_EVENT]
    )


def build_sdp_answer(local_ip: str, rtp_port: int, username: str = "-") -> str:
    """Build a 200 OK answer advertising PCMU and PCMA."""
    return _build_sdp(local_ip, rtp_port, username, [PT_PCMU, PT_PCMA])
