"""Client transactions with retransmission, and the 2xx-retransmitting
INVITE server transaction.

RFC 3261 §17.1 defines the client side: a request is retransmitted on an
exponential back-off (T1 doubling up to T2) until a response arrives or the
transaction gives up. This engine applies the same schedule to INVITE and
non-INVITE requests, caps the number of retransmits per method and runs an
absolute timeout alongside the cap.

RFC 6026 §7.1 moves 2xx retransmission for INVITE into the server
transaction (Accepted state); :class:`InviteServerTxn` implements that part
for calls we answer.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from enum import StrEnum

from sipcall.sip.errors import SendError, TransactionTimeout
from sipcall.sip.message import SipMessage, extract_branch, parse_message

logger = logging.getLogger(__name__)

# RFC 3261 Appendix A, Table 4: default timer values
T1 = 0.5  # RTT estimate
T2 = 4.0  # retransmit interval ceiling
MAX_INVITE_RETRANSMITS = 6
MAX_NON_INVITE_RETRANSMITS = 10

Addr = tuple[str, int]
MessageHandler = Callable[[SipMessage, Addr], None]
ErrorCallback = Callable[[Exception], None]


class TxnState(StrEnum):
    CALLING = "calling"
    PROCEEDING = "proceeding"
    COMPLETED = "completed"
    TERMINATED = "terminated"


@dataclasses.dataclass(eq=False)
class ClientTxn:
    """One outbound request and the timers governing it."""

    branch: str
    method: str
    message: bytes
    addr: Addr
    call_id: str
    on_message: MessageHandler | None = None
    on_error: ErrorCallback | None = None
    state: TxnState = TxnState.CALLING
    retransmit_count: int = 0
    interval: float = T1
    completed: bool = False
    terminated: bool = False
    retransmit_timer: asyncio.TimerHandle | None = None
    timeout_timer: asyncio.TimerHandle | None = None
    error_reported: bool = False

    @property
    def is_invite(self) -> bool:
        return self.method == "INVITE"

    @property
    def max_retransmits(self) -> int:
        if self.is_invite:
            return MAX_INVITE_RETRANSMITS
        return MAX_NON_INVITE_RETRANSMITS


class TransactionManager:
    """Owns every live client transaction of one SIP client.

    Each transaction holds at most one inbound-message subscription, keyed by
    its branch. Terminating a transaction cancels both timers and drops the
    subscription before the error callback runs, so nothing fires twice.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        *,
        t1: float = T1,
        t2: float = T2,
    ) -> None:
        self._explicit_loop = loop
        self._transport: asyncio.DatagramTransport | None = None
        self._txns: dict[str, ClientTxn] = {}
        self.t1 = t1
        self.t2 = t2

    @property
    def _loop(self) -> asyncio.AbstractEventLoop:
        return self._explicit_loop or asyncio.get_running_loop()

    def attach(self, transport: asyncio.DatagramTransport | None) -> None:
        self._transport = transport

    def __len__(self) -> int:
        return len(self._txns)

    def __contains__(self, branch: object) -> bool:
        return branch in self._txns

    def get(self, branch: str) -> ClientTxn | None:
        return self._txns.get(branch)

    def sendto(self, data: bytes, addr: Addr) -> None:
        """Hand a datagram to the socket, raising SendError on failure."""
        transport = self._transport
        if transport is None or transport.is_closing():
            raise SendError("SIP socket is not open")
        try:
            transport.sendto(data, addr)
        except OSError as exc:
            raise SendError(f"Failed to send to {addr[0]}:{addr[1]}: {exc}") from exc

    def create(
        self,
        branch: str,
        method: str,
        message: bytes,
        on_message: MessageHandler | None = None,
        *,
        addr: Addr,
        on_error: ErrorCallback | None = None,
    ) -> ClientTxn:
        if branch in self._txns:
            raise ValueError(f"Transaction {branch} already exists")
        txn = ClientTxn(
            branch=branch,
            method=method,
            message=message,
            addr=addr,
            call_id=parse_message(message).call_id,
            on_message=on_message,
            on_error=on_error,
            interval=self.t1,
        )
        self._txns[branch] = txn
        logger.debug("Transaction %s created (%s)", branch, method)
        return txn

    def send(self, txn: ClientTxn) -> None:
        """Send the request and arm its retransmit and timeout timers.

        A failed first send terminates the transaction and raises SendError
        to the caller; the error callback is not invoked for it.
        """
        if txn.completed or txn.terminated:
            raise SendError("Transaction already terminated")
        try:
            self.sendto(txn.message, txn.addr)
        except SendError:
            logger.error("Failed to send %s (%s)", txn.method, txn.branch)
            self.terminate(txn.branch)
            raise
        logger.debug("%s sent to %s:%d", txn.method, txn.addr[0], txn.addr[1])

        txn.retransmit_timer = self._loop.call_later(
            txn.interval, self._fire_retransmit, txn
        )
        total = (64 if txn.is_invite else 32) * self.t1
        txn.timeout_timer = self._loop.call_later(total, self._fire_timeout, txn)

    def on_response(self, branch: str, status_code: int) -> None:
        txn = self._txns.get(branch)
        if txn is None or txn.terminated:
            return
        logger.debug("Transaction %s received %d", branch, status_code)

        if status_code < 200:
            if txn.is_invite and txn.state == TxnState.CALLING:
                # RFC 3261 §17.1.1.2: provisional response moves the INVITE
                # transaction to Proceeding; retransmissions stop, the
                # absolute timeout stays armed
                txn.state = TxnState.PROCEEDING
                _cancel(txn.retransmit_timer)
                txn.retransmit_timer = None
        elif status_code == 401 and not txn.is_invite:
            # Challenge: the caller re-issues a fresh transaction
            _cancel(txn.retransmit_timer)
            txn.retransmit_timer = None
        else:
            txn.state = TxnState.COMPLETED
            txn.completed = True
            _cancel(txn.retransmit_timer)
            _cancel(txn.timeout_timer)
            txn.retransmit_timer = None
            txn.timeout_timer = None

    def dispatch(self, msg: SipMessage, addr: Addr) -> bool:
        """Route a response to the transaction named by its top Via branch.

        Returns False for stray responses (no live transaction, or a Call-ID
        that does not belong to it).
        """
        branch = extract_branch(msg)
        txn = self._txns.get(branch) if branch else None
        if txn is None or txn.call_id != msg.call_id:
            return False
        if msg.status_code is not None:
            self.on_response(txn.branch, msg.status_code)
        if txn.on_message is not None and not txn.terminated:
            txn.on_message(msg, addr)
        return True

    def terminate(self, branch: str, error: Exception | None = None) -> None:
        txn = self._txns.pop(branch, None)
        if txn is None or txn.terminated:
            return
        txn.terminated = True
        txn.completed = True
        txn.state = TxnState.TERMINATED
        _cancel(txn.retransmit_timer)
        _cancel(txn.timeout_timer)
        txn.retransmit_timer = None
        txn.timeout_timer = None
        txn.on_message = None
        logger.debug("Transaction %s terminated (%s)", branch, txn.method)

        if error is not None and txn.on_error is not None and not txn.error_reported:
            txn.error_reported = True
            txn.on_error(error)

    def terminate_all(self, method: str | None = None) -> int:
        branches = [
            b for b, t in self._txns.items() if method is None or t.method == method
        ]
        for branch in branches:
            self.terminate(branch)
        if branches:
            logger.debug("Cleaned up %d transaction(s)", len(branches))
        return len(branches)

    def _fire_retransmit(self, txn: ClientTxn) -> None:
        txn.retransmit_timer = None
        if txn.completed or txn.terminated or txn.state != TxnState.CALLING:
            return
        if self._txns.get(txn.branch) is not txn:
            return

        try:
            self.sendto(txn.message, txn.addr)
        except SendError as exc:
            logger.error("Failed to retransmit %s: %s", txn.method, exc)
            self.terminate(txn.branch, exc)
            return

        txn.retransmit_count += 1
        if txn.retransmit_count >= txn.max_retransmits:
            logger.warning(
                "Transaction %s (%s) failed: no response after %d retransmits",
                txn.branch,
                txn.method,
                txn.retransmit_count,
            )
            self.terminate(
                txn.branch, TransactionTimeout(f"{txn.method} transaction timeout")
            )
            return

        txn.interval = min(txn.interval * 2, self.t2)
        logger.debug(
            "Retransmitted %s (%d/%d), next in %.1fs",
            txn.method,
            txn.retransmit_count,
            txn.max_retransmits,
            txn.interval,
        )
        txn.retransmit_timer = self._loop.call_later(
            txn.interval, self._fire_retransmit, txn
        )

    def _fire_timeout(self, txn: ClientTxn) -> None:
        txn.timeout_timer = None
        if txn.completed or txn.terminated:
            return
        logger.warning("Transaction %s (%s) timed out", txn.branch, txn.method)
        self.terminate(
            txn.branch, TransactionTimeout(f"{txn.method} transaction timeout")
        )


class ServerTxnState(StrEnum):
    ACCEPTED = "accepted"  # 2xx sent, retransmitting until ACK
    CONFIRMED = "confirmed"  # ACK received
    TERMINATED = "terminated"


class InviteServerTxn:
    """Retransmits our 2xx to an inbound INVITE until the ACK shows up.

    Timer G re-sends the response starting at T1 and doubling up to T2;
    Timer H (64*T1) gives up and reports a timeout to the caller.
    """

    def __init__(
        self,
        branch: str,
        send: Callable[[bytes, Addr], None],
        loop: asyncio.AbstractEventLoop,
        on_timeout: Callable[[], None],
        *,
        t1: float = T1,
        t2: float = T2,
    ) -> None:
        self.branch = branch
        self.state = ServerTxnState.ACCEPTED
        self._send = send
        self._loop = loop
        self._on_timeout = on_timeout
        self._t1 = t1
        self._t2 = t2
        self._interval = t1
        self._response = b""
        self._addr: Addr | None = None
        self._timer_g: asyncio.TimerHandle | None = None
        self._timer_h: asyncio.TimerHandle | None = None

    def send_2xx(self, response: bytes, addr: Addr) -> None:
        self._response = response
        self._addr = addr
        self._send(response, addr)
        self._timer_g = self._loop.call_later(self._interval, self._fire_g)
        self._timer_h = self._loop.call_later(64 * self._t1, self._fire_h)

    def receive_retransmit(self) -> None:
        if self.state == ServerTxnState.ACCEPTED and self._addr is not None:
            logger.debug("INVITE %s retransmitted, re-sending 2xx", self.branch)
            self._resend()

    def receive_ack(self) -> None:
        if self.state != ServerTxnState.ACCEPTED:
            return
        self.state = ServerTxnState.CONFIRMED
        self._cancel_timers()
        logger.debug("INVITE %s confirmed by ACK", self.branch)

    def terminate(self) -> None:
        self.state = ServerTxnState.TERMINATED
        self._cancel_timers()

    def _resend(self) -> bool:
        assert self._addr is not None
        try:
            self._send(self._response, self._addr)
        except SendError as exc:
            logger.error("Failed to retransmit 2xx for %s: %s", self.branch, exc)
            self.terminate()
            return False
        return True

    def _fire_g(self) -> None:
        self._timer_g = None
        if self.state != ServerTxnState.ACCEPTED:
            return
        if not self._resend():
            return
        self._interval = min(self._interval * 2, self._t2)
        self._timer_g = self._loop.call_later(self._interval, self._fire_g)

    def _fire_h(self) -> None:
        self._timer_h = None
        if self.state != ServerTxnState.ACCEPTED:
            return
        logger.warning("INVITE %s: no ACK for our 2xx", self.branch)
        self.terminate()
        self._on_timeout()

    def _cancel_timers(self) -> None:
        _cancel(self._timer_g)
        _cancel(self._timer_h)
        self._timer_g = None
        self._timer_h = None


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
