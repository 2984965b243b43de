"""Exception taxonomy for the SIP/RTP engine."""

from __future__ import annotations


class SipError(Exception):
    """Base class for every failure surfaced by the engine."""


class SocketError(SipError):
    """A UDP socket could not be bound or used."""


class SendError(SocketError):
    """A datagram could not be handed to the transport."""


class TransactionTimeout(SipError):
    """Retransmissions exhausted or the absolute transaction timer fired."""


class RegistrationError(SipError):
    """The registrar rejected or never answered a REGISTER."""


class AuthenticationError(RegistrationError):
    """The digest challenge could not be satisfied."""


class CallError(SipError):
    """An outbound call failed at the signaling or timeout level."""


class CallRejected(CallError):
    """The callee answered the INVITE with a final failure response."""

    def __init__(self, status_line: str) -> None:
        super().__init__(f"Call rejected: {status_line}")
        self.status_line = status_line


class SdpParseError(SipError):
    """An SDP body lacks a usable connection address or audio port."""
