"""Digest authentication for 401 challenges (RFC 2617 / RFC 3261 §22.4)."""

from __future__ import annotations

import dataclasses
import hashlib
import os
import re

from sipcall.sip.errors import AuthenticationError

_PARAM_RE = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^,\s]+))')


@dataclasses.dataclass
class DigestChallenge:
    realm: str
    nonce: str
    algorithm: str = "MD5"
    qop: str | None = None
    opaque: str | None = None


def _md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def parse_challenge(header_value: str | None) -> DigestChallenge:
    """Parse a ``WWW-Authenticate: Digest ...`` header value.

    Raises AuthenticationError when the header is absent, is not a Digest
    challenge, or lacks realm/nonce.
    """
    if not header_value:
        raise AuthenticationError("No WWW-Authenticate header in 401 response")
    scheme, _, rest = header_value.strip().partition(" ")
    if scheme.lower() != "digest":
        raise AuthenticationError(f"Unsupported auth scheme: {scheme}")

    params: dict[str, str] = {}
    for match in _PARAM_RE.finditer(rest):
        key, quoted, bare = match.groups()
        params[key.lower()] = quoted if quoted is not None else bare

    realm = params.get("realm")
    nonce = params.get("nonce")
    if realm is None or nonce is None:
        raise AuthenticationError("Digest challenge missing realm or nonce")
    return DigestChallenge(
        realm=realm,
        nonce=nonce,
        algorithm=params.get("algorithm", "MD5"),
        qop=params.get("qop"),
        opaque=params.get("opaque"),
    )


def calculate_digest_response(
    username: str,
    password: str,
    method: str,
    uri: str,
    challenge: DigestChallenge,
    *,
    cnonce: str | None = None,
    nonce_count: int = 1,
) -> str:
    """Compute the digest ``response`` value.

    Without qop: MD5(HA1:nonce:HA2). With ``qop=auth`` the RFC 2617 form
    MD5(HA1:nonce:nc:cnonce:auth:HA2) is used, which needs ``cnonce``.
    """
    ha1 = _md5_hex(f"{username}:{challenge.realm}:{password}")
    ha2 = _md5_hex(f"{method}:{uri}")
    if _wants_qop_auth(challenge) and cnonce is not None:
        nc = f"{nonce_count:08x}"
        return _md5_hex(f"{ha1}:{challenge.nonce}:{nc}:{cnonce}:auth:{ha2}")
    return _md5_hex(f"{ha1}:{challenge.nonce}:{ha2}")


def _wants_qop_auth(challenge: DigestChallenge) -> bool:
    if not challenge.qop:
        return False
    return "auth" in [q.strip() for q in challenge.qop.split(",")]


def build_authorization(
    username: str,
    password: str,
    method: str,
    uri: str,
    challenge: DigestChallenge,
) -> str:
    """Build the ``Authorization`` header value answering ``challenge``."""
    cnonce = os.urandom(8).hex() if _wants_qop_auth(challenge) else None
    response = calculate_digest_response(
        username, password, method, uri, challenge, cnonce=cnonce
    )
    parts = [
        f'username="{username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
        f'response="{response}"',
        f"algorithm={challenge.algorithm}",
    ]
    if challenge.opaque is not None:
        parts.append(f'opaque="{challenge.opaque}"')
    if cnonce is not None:
        parts.extend(["qop=auth", "nc=00000001", f'cnonce="{cnonce}"'])
    return "Digest " + ", ".join(parts)
