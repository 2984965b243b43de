"""SIP message tokenizer, parser and builders."""

from __future__ import annotations

import dataclasses
import random
import string
import uuid

# RFC 3261 §7.3.3: single-letter header names map to their long forms (§20)
_COMPACT_HEADERS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
    "k": "Supported",
}

USER_AGENT = "sipcall/0.1"


class MalformedMessage(ValueError):
    """Raised when a datagram is not a recognisable SIP message."""


@dataclasses.dataclass
class SipMessage:
    """Parsed SIP request or response.

    ``headers`` keeps every header line in wire order, duplicates included,
    so Via and Record-Route stacks survive a parse/build cycle unchanged.
    """

    method: str
    uri: str
    version: str
    headers: list[tuple[str, str]]
    body: str
    status_code: int | None = None
    reason: str = ""

    @property
    def is_response(self) -> bool:
        return self.status_code is not None

    @property
    def status_line(self) -> str:
        if self.status_code is None:
            return f"{self.method} {self.uri} {self.version}"
        return f"{self.version} {self.status_code} {self.reason}".rstrip()

    def header(self, name: str) -> str | None:
        """First value of ``name``, compared case-insensitively (RFC 3261 §7.3.1)."""
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return None

    def header_values(self, name: str) -> list[str]:
        """All values of a header, in the order they appeared."""
        lower = name.lower()
        return [value for key, value in self.headers if key.lower() == lower]

    @property
    def call_id(self) -> str:
        return self.header("Call-ID") or ""

    @property
    def cseq(self) -> tuple[int, str]:
        """CSeq as ``(number, method)``; ``(0, "")`` when absent or garbled."""
        value = self.header("CSeq") or ""
        number, _, method = value.strip().partition(" ")
        try:
            return int(number), method.strip()
        except ValueError:
            return 0, ""


def parse_message(data: bytes) -> SipMessage:
    """Parse a SIP message (request or response) from raw bytes."""
    # RFC 3261 §7: SIP is UTF-8 text; messages use CRLF line endings
    text = data.decode("utf-8", errors="replace")
    # RFC 3261 §7: empty line (CRLF CRLF) separates headers from body
    head, _, body = text.partition("\r\n\r\n")
    lines = head.split("\r\n")

    start = lines[0].strip()
    parts = start.split(" ", 2)
    if len(parts) < 2:
        raise MalformedMessage(f"bad start line: {start!r}")

    status_code: int | None = None
    reason = ""
    if parts[0].startswith("SIP/"):
        # RFC 3261 §7.2: Status-Line = SIP-Version SP Status-Code SP Reason-Phrase
        version = parts[0]
        try:
            status_code = int(parts[1])
        except ValueError as exc:
            raise MalformedMessage(f"bad status code: {start!r}") from exc
        reason = parts[2] if len(parts) > 2 else ""
        method = ""
        uri = parts[1]
    else:
        # RFC 3261 §7.1: Request-Line = Method SP Request-URI SP SIP-Version
        method = parts[0]
        uri = parts[1]
        version = parts[2] if len(parts) > 2 else "SIP/2.0"

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        if ":" in line:
            key, _, value = line.partition(":")
            key = key.strip()
            key = _COMPACT_HEADERS.get(key, key)
            headers.append((key, value.strip()))

    msg = SipMessage(
        method=method,
        uri=uri,
        version=version,
        headers=headers,
        body=body,
        status_code=status_code,
        reason=reason,
    )
    if status_code is None:
        return msg
    # Responses carry the request method only in CSeq
    msg.method = msg.cseq[1]
    return msg


def _encode_message(lines: list[str], body: str, content_type: str) -> bytes:
    """Encode header lines + body into a complete SIP message."""
    body_bytes = body.encode("utf-8") if body else b""
    if body_bytes:
        lines.append(f"Content-Type: {content_type}")
    # RFC 3261 §18.3: Content-Length MUST be used over UDP
    lines.append(f"Content-Length: {len(body_bytes)}")
    lines.append("")
    msg_bytes = ("\r\n".join(lines) + "\r\n").encode("utf-8")
    if body_bytes:
        msg_bytes += body_bytes
    return msg_bytes


def build_response(
    request: SipMessage,
    status_code: int,
    reason: str,
    body: str = "",
    *,
    to_tag: str | None = None,
    extra_headers: list[tuple[str, str]] | None = None,
    content_type: str = "application/sdp",
) -> bytes:
    """Build a SIP response mirroring the dialog headers of ``request``."""
    lines = [f"SIP/2.0 {status_code} {reason}"]

    # RFC 3261 §8.2.6.2: Via values in the response MUST equal those in
    # the request and MUST keep the same ordering
    for value in request.header_values("Via"):
        lines.append(f"Via: {value}")

    # RFC 3261 §12.1.1: a UAS copies Record-Route into 2xx responses
    # that establish a dialog, preserving order
    if 200 <= status_code < 300:
        for value in request.header_values("Record-Route"):
            lines.append(f"Record-Route: {value}")

    from_value = request.header("From")
    if from_value is not None:
        lines.append(f"From: {from_value}")

    # RFC 3261 §8.2.6.2: if the request To has no tag, the UAS MUST add one
    to_value = request.header("To")
    if to_value is not None:
        if to_tag is not None and ";tag=" not in to_value:
            to_value = f"{to_value};tag={to_tag}"
        lines.append(f"To: {to_value}")

    for hdr in ("Call-ID", "CSeq"):
        value = request.header(hdr)
        if value is not None:
            lines.append(f"{hdr}: {value}")

    if extra_headers:
        for hdr_name, hdr_value in extra_headers:
            lines.append(f"{hdr_name}: {hdr_value}")
    lines.append(f"User-Agent: {USER_AGENT}")

    return _encode_message(lines, body, content_type)


def build_request(
    method: str,
    uri: str,
    *,
    headers: list[tuple[str, str]],
    body: str = "",
    content_type: str = "application/sdp",
) -> bytes:
    """Build a SIP request message.

    Parameters:
        method: SIP method (e.g. "REGISTER", "INVITE")
        uri: Request-URI
        headers: List of (name, value) header tuples, emitted in order
        body: Optional message body
        content_type: Content-Type when body is present
    """
    lines = [f"{method} {uri} SIP/2.0"]
    for name, value in headers:
        lines.append(f"{name}: {value}")
    lines.append(f"User-Agent: {USER_AGENT}")
    return _encode_message(lines, body, content_type)


# ---------------------------------------------------------------------------
# SIP header/parameter utilities
# ---------------------------------------------------------------------------

_TAG_CHARS = string.ascii_lowercase + string.digits


def generate_tag() -> str:
    """Generate a random SIP tag value (RFC 3261 §19.3)."""
    return "".join(random.choices(_TAG_CHARS, k=8))


def generate_branch() -> str:
    """Generate a Via branch starting with the RFC 3261 magic cookie."""
    return "z9hG4bK" + "".join(random.choices(_TAG_CHARS, k=16))


def generate_call_id(host: str) -> str:
    return f"{uuid.uuid4().hex}@{host}"


def parse_via_params(via: str) -> dict[str, str]:
    """Parse Via header semicolon-delimited parameters into a dict.

    Parameters without values (e.g. bare ``rport``) get empty string values.
    The first segment (protocol/sent-by) is excluded.
    """
    params: dict[str, str] = {}
    for part in via.split(";")[1:]:
        part = part.strip()
        if "=" in part:
            key, _, value = part.partition("=")
            params[key.strip()] = value.strip()
        else:
            params[part] = ""
    return params


def extract_branch(msg: SipMessage) -> str | None:
    """Branch parameter of the topmost Via (RFC 3261 §17.1.3)."""
    via = msg.header("Via")
    if via is None:
        return None
    return parse_via_params(via).get("branch")


def extract_tag(value: str | None) -> str | None:
    """Return the ``tag`` parameter of a From/To header value."""
    if not value or ";tag=" not in value:
        return None
    tag = value.split(";tag=", 1)[1]
    for sep in (";", ">", " ", ","):
        tag = tag.split(sep, 1)[0]
    return tag or None


def extract_uri(value: str) -> str:
    """Strip display name, angle brackets and header params from a name-addr."""
    if "<" in value and ">" in value:
        return value[value.index("<") + 1 : value.index(">")]
    return value.split(";", 1)[0].strip()
