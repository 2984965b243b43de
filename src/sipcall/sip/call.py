"""Registration and call (dialog) state, plus the requests we originate."""

from __future__ import annotations

import asyncio
import dataclasses
from enum import StrEnum
from typing import Any

from sipcall.sip.message import SipMessage, build_request, extract_uri
from sipcall.sip.transaction import InviteServerTxn

Addr = tuple[str, int]

ALLOW = "INVITE, ACK, BYE, CANCEL, OPTIONS"


class Direction(StrEnum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class CallState(StrEnum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    ESTABLISHED = "established"
    TERMINATED = "terminated"


@dataclasses.dataclass
class Registration:
    username: str
    password: str
    domain: str
    local_ip: str
    local_port: int = 0
    call_id: str = ""
    from_tag: str = ""
    cseq: int = 0
    registered: bool = False
    authorized: bool = False

    @property
    def aor(self) -> str:
        return f"sip:{self.username}@{self.domain}"

    @property
    def request_uri(self) -> str:
        return f"sip:{self.domain}"

    @property
    def contact(self) -> str:
        return f"<sip:{self.username}@{self.local_ip}:{self.local_port}>"

    @property
    def via_host(self) -> str:
        return f"{self.local_ip}:{self.local_port}"


@dataclasses.dataclass
class PendingInvite:
    """An inbound INVITE waiting for answer or rejection."""

    message: SipMessage
    addr: Addr
    call_id: str
    from_header: str
    to_header: str
    contact: str
    remote_rtp: Addr | None = None

    @property
    def caller(self) -> str:
        return extract_uri(self.from_header)


@dataclasses.dataclass
class CallResult:
    call_id: str
    number: str
    direction: Direction
    duration: float
    ended_by: str
    rtp_packets_sent: int = 0
    rtp_packets_received: int = 0

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(eq=False)
class Call:
    """The single dialog this client may hold.

    ``local_header``/``remote_header`` are the full From/To values (tags
    included) as they must appear in requests we send inside the dialog.
    """

    call_id: str
    direction: Direction
    local_header: str
    remote_header: str
    remote_target: str
    remote_addr: Addr
    number: str = ""
    state: CallState = CallState.IDLE
    remote_rtp: Addr | None = None
    cseq: int = 1
    duration: float = 0.0
    invite_branch: str | None = None
    invite: SipMessage | None = None
    server_txn: InviteServerTxn | None = None
    future: asyncio.Future[CallResult] | None = None
    setup_timer: asyncio.TimerHandle | None = None
    duration_timer: asyncio.TimerHandle | None = None
    started_at: float | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "direction": str(self.direction),
            "state": str(self.state),
            "remote_party": self.number or extract_uri(self.remote_header),
            "remote_rtp": (
                f"{self.remote_rtp[0]}:{self.remote_rtp[1]}"
                if self.remote_rtp
                else None
            ),
        }


def _via(host: str, branch: str) -> str:
    # RFC 3581: empty rport asks the registrar to answer our source port
    return f"SIP/2.0/UDP {host};rport;branch={branch}"


def build_register(
    reg: Registration,
    branch: str,
    *,
    authorization: str | None = None,
    expires: int = 3600,
) -> bytes:
    headers = [
        ("Via", _via(reg.via_host, branch)),
        ("Max-Forwards", "70"),
        ("Contact", reg.contact),
        ("To", f"<{reg.aor}>"),
        ("From", f"<{reg.aor}>;tag={reg.from_tag}"),
        ("Call-ID", reg.call_id),
        ("CSeq", f"{reg.cseq} REGISTER"),
        ("Expires", str(expires)),
    ]
    if authorization is not None:
        headers.append(("Authorization", authorization))
    headers.append(("Allow", ALLOW))
    return build_request("REGISTER", reg.request_uri, headers=headers)


def build_invite(call: Call, branch: str, reg: Registration, sdp: str) -> bytes:
    return build_request(
        "INVITE",
        call.remote_target,
        headers=[
            ("Via", _via(reg.via_host, branch)),
            ("Max-Forwards", "70"),
            ("Contact", reg.contact),
            ("To", call.remote_header),
            ("From", call.local_header),
            ("Call-ID", call.call_id),
            ("CSeq", f"{call.cseq} INVITE"),
            ("Allow", ALLOW),
        ],
        body=sdp,
    )


def build_ack(call: Call, branch: str, reg: Registration) -> bytes:
    # RFC 3261 §13.2.2.4: ACK for 2xx carries the INVITE's CSeq number
    return build_request(
        "ACK",
        call.remote_target,
        headers=[
            ("Via", _via(reg.via_host, branch)),
            ("Max-Forwards", "70"),
            ("To", call.remote_header),
            ("From", call.local_header),
            ("Call-ID", call.call_id),
            ("CSeq", f"{call.cseq} ACK"),
        ],
    )


def build_cancel(call: Call, reg: Registration) -> bytes:
    # RFC 3261 §9.1: CANCEL reuses the INVITE's branch, To and CSeq number
    assert call.invite_branch is not None
    return build_request(
        "CANCEL",
        call.remote_target,
        headers=[
            ("Via", _via(reg.via_host, call.invite_branch)),
            ("Max-Forwards", "70"),
            ("To", call.remote_header),
            ("From", call.local_header),
            ("Call-ID", call.call_id),
            ("CSeq", f"{call.cseq} CANCEL"),
        ],
    )


def build_bye(call: Call, branch: str, reg: Registration, cseq: int) -> bytes:
    return build_request(
        "BYE",
        call.remote_target,
        headers=[
            ("Via", _via(reg.via_host, branch)),
            ("Max-Forwards", "70"),
            ("To", call.remote_header),
            ("From", call.local_header),
            ("Call-ID", call.call_id),
            ("CSeq", f"{cseq} BYE"),
        ],
    )
