"""SIP user agent over UDP: registration, outbound and inbound calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import socket
import time
from collections.abc import Callable
from typing import Any

from sipcall.rtp.stream import RtpEngine, open_rtp_engine
from sipcall.sip.auth import build_authorization, parse_challenge
from sipcall.sip.call import (
    ALLOW,
    Call,
    CallResult,
    CallState,
    Direction,
    PendingInvite,
    Registration,
    build_ack,
    build_bye,
    build_cancel,
    build_invite,
    build_register,
)
from sipcall.sip.errors import (
    AuthenticationError,
    CallError,
    CallRejected,
    RegistrationError,
    SdpParseError,
    SendError,
    SipError,
    SocketError,
)
from sipcall.sip.message import (
    MalformedMessage,
    SipMessage,
    build_response,
    extract_branch,
    extract_tag,
    extract_uri,
    generate_branch,
    generate_call_id,
    generate_tag,
    parse_message,
)
from sipcall.sip.sdp import build_sdp_answer, build_sdp_offer, parse_sdp
from sipcall.sip.transaction import T1, T2, InviteServerTxn, TransactionManager
from sipcall.stats import Statistics

logger = logging.getLogger(__name__)

_HandlerType = Callable[[SipMessage, tuple[str, int]], None]

# Final responses that mean the callee declined rather than the call failing
REJECT_CODES = frozenset({404, 480, 486, 603})


def get_local_ip(target: str = "8.8.8.8") -> str:
    """Detect the local IP address used to reach ``target``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((target, 80))
        return sock.getsockname()[0]
    except OSError as exc:
        logger.warning("Could not detect local IP (%s), using 127.0.0.1", exc)
        return "127.0.0.1"
    finally:
        sock.close()


class SipClient(asyncio.DatagramProtocol):
    """Single-call SIP user agent.

    Every inbound datagram goes through :meth:`datagram_received`: responses
    are routed to their client transaction, requests to a per-method handler.
    All state lives on this object and is only touched from the event loop.
    """

    def __init__(
        self,
        *,
        server: str,
        username: str,
        password: str,
        domain: str | None = None,
        port: int = 5060,
        local_port: int = 0,
        local_ip: str | None = None,
        audio_buf: bytes | None = None,
        stats: Statistics | None = None,
        t1: float = T1,
        t2: float = T2,
        register_timeout: float | None = None,
        call_setup_timeout: float | None = None,
    ) -> None:
        self.server = server
        self.port = port
        self.local_port = local_port
        self.local_ip = local_ip or "127.0.0.1"
        self._detect_ip = local_ip is None
        self.registrar_addr: tuple[str, int] = (server, port)
        self.stats = stats if stats is not None else Statistics()
        self.txns = TransactionManager(t1=t1, t2=t2)
        self.register_timeout = register_timeout or max(32 * t1 + 5.0, 20.0)
        self.call_setup_timeout = call_setup_timeout or max(64 * t1 + 5.0, 40.0)
        self.registration = Registration(
            username=username,
            password=password,
            domain=domain or server,
            local_ip=self.local_ip,
            local_port=local_port,
        )
        self.rtp: RtpEngine | None = None
        self.call: Call | None = None
        self.pending: PendingInvite | None = None
        self._audio_buf = audio_buf
        self._transport: asyncio.DatagramTransport | None = None
        self._register_future: asyncio.Future[None] | None = None
        self._handlers: dict[str, _HandlerType] = {
            "INVITE": self._handle_invite,
            "ACK": self._handle_ack,
            "BYE": self._handle_bye,
            "CANCEL": self._handle_cancel,
            "OPTIONS": self._handle_options,
        }

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Resolve the registrar and bind the SIP and RTP sockets."""
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                self.server, self.port, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except OSError as exc:
            raise SocketError(f"Cannot resolve {self.server}: {exc}") from exc
        host, port = infos[0][4][:2]
        self.registrar_addr = (host, port)
        if self._detect_ip:
            self.local_ip = get_local_ip(host)
            self.registration.local_ip = self.local_ip

        try:
            await loop.create_datagram_endpoint(
                lambda: self, local_addr=("0.0.0.0", self.local_port)
            )
        except OSError as exc:
            raise SocketError(f"Failed to bind SIP socket: {exc}") from exc
        self.rtp = await open_rtp_engine(
            "0.0.0.0", 0, local_ip=self.local_ip, audio_buf=self._audio_buf
        )
        logger.info(
            "SIP client %s ready on %s:%d (registrar %s:%d)",
            self.registration.username,
            self.local_ip,
            self.local_port,
            *self.registrar_addr,
        )

    def close(self) -> None:
        """Tear down: fail pending operations, stop RTP, close both sockets."""
        if self.registration.registered:
            self._send_unregister()
        self.registration.registered = False

        fut = self._register_future
        if fut is not None and not fut.done():
            fut.set_exception(RegistrationError("SIP client closed"))
        if self.call is not None:
            self._fail_call(self.call, CallError("SIP client closed"))
        self.pending = None
        self.txns.terminate_all()

        if self.rtp is not None:
            self._stop_rtp()
            self.rtp.close()
            self.rtp = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self.txns.attach(None)
        logger.info("SIP client closed")

    # -- asyncio.DatagramProtocol ------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        self.txns.attach(self._transport)
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self.local_port = sockname[1]
            self.registration.local_port = self.local_port
        logger.info("SIP socket bound to port %d", self.local_port)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("SIP socket lost: %s", exc)
        self._transport = None
        self.txns.attach(None)

    def error_received(self, exc: Exception) -> None:
        logger.warning("SIP socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if not data.strip(b"\r\n "):
            logger.debug("Keepalive CRLF from %s", addr)
            return

        logger.debug("Raw from %s:\n%s", addr, data.decode("utf-8", errors="replace"))
        try:
            msg = parse_message(data)
        except MalformedMessage as exc:
            logger.warning("Dropping malformed datagram from %s: %s", addr, exc)
            return

        try:
            if msg.is_response:
                if not self.txns.dispatch(msg, addr):
                    logger.debug(
                        "Ignoring stray response %s (Call-ID %s)",
                        msg.status_line,
                        msg.call_id,
                    )
                return
            self._dispatch_request(msg, addr)
        except Exception:
            logger.exception("Error handling %s from %s", msg.status_line, addr)

    def _dispatch_request(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        logger.info("Received %s from %s:%d", msg.method, *addr)
        handler = self._handlers.get(msg.method)
        if handler is not None:
            handler(msg, addr)
            return
        # RFC 3261 §8.2.1: 405 with an Allow header for unsupported methods
        self._send(
            build_response(
                msg,
                405,
                "Method Not Allowed",
                to_tag=generate_tag(),
                extra_headers=[("Allow", ALLOW)],
            ),
            addr,
        )

    def _send(self, data: bytes, addr: tuple[str, int]) -> None:
        """Fire-and-forget send for responses and ACKs."""
        try:
            self.txns.sendto(data, addr)
        except SendError as exc:
            logger.warning("Failed to send to %s:%d: %s", addr[0], addr[1], exc)

    # -- properties ----------------------------------------------------------

    @property
    def registered(self) -> bool:
        return self.registration.registered

    @property
    def rtp_port(self) -> int:
        return self.rtp.local_port if self.rtp is not None else 0

    def status(self) -> dict[str, Any]:
        return {
            "registered": self.registered,
            "server": f"{self.server}:{self.port}",
            "username": self.registration.username,
            "local_address": f"{self.local_ip}:{self.local_port}",
            "rtp_port": self.rtp_port,
            "active_call": self.call is not None,
            "pending_call": self.pending is not None,
            "call_state": str(self.call.state) if self.call else "idle",
            "call": self.call.summary() if self.call else None,
            "caller": self.pending.caller if self.pending else None,
        }

    # -- registration --------------------------------------------------------

    async def register(self) -> None:
        """Register with the registrar, answering one digest challenge.

        Raises RegistrationError (AuthenticationError for credential
        problems) with the registrar's status line on failure.
        """
        if self._register_future is not None and not self._register_future.done():
            raise RegistrationError("Registration already in progress")

        reg = self.registration
        reg.call_id = generate_call_id(self.local_ip)
        reg.from_tag = generate_tag()
        reg.cseq = 1
        reg.registered = False
        reg.authorized = False
        self.stats.registration_attempts += 1
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._register_future = fut
        logger.info(
            "Registering %s with %s:%d", reg.aor, *self.registrar_addr
        )

        try:
            self._send_register()
            await asyncio.wait_for(fut, self.register_timeout)
        except TimeoutError:
            logger.error("Registration timeout")
            self.txns.terminate_all("REGISTER")
            self.stats.record_registration(False)
            raise RegistrationError("Registration timeout") from None
        except SipError:
            self.stats.record_registration(False)
            raise
        finally:
            self._register_future = None

        reg.registered = True
        self.stats.record_registration(True)
        logger.info("Registration successful")

    def _send_register(self, authorization: str | None = None) -> None:
        reg = self.registration
        branch = generate_branch()
        message = build_register(reg, branch, authorization=authorization)
        txn = self.txns.create(
            branch,
            "REGISTER",
            message,
            self._on_register_response,
            addr=self.registrar_addr,
            on_error=self._on_register_error,
        )
        try:
            self.txns.send(txn)
        except SendError as exc:
            raise RegistrationError(f"Registration failed: {exc}") from exc

    def _on_register_response(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        fut = self._register_future
        code = msg.status_code
        if fut is None or fut.done() or code is None or code < 200:
            return
        reg = self.registration
        branch = extract_branch(msg) or ""

        if 200 <= code < 300:
            self.txns.terminate(branch)
            fut.set_result(None)
        elif code == 401 and not reg.authorized:
            logger.info("Received 401 challenge, retrying with credentials")
            # The challenge resets every retransmission this client has going
            self.txns.terminate_all()
            try:
                challenge = parse_challenge(msg.header("WWW-Authenticate"))
                reg.cseq += 1
                reg.authorized = True
                authorization = build_authorization(
                    reg.username, reg.password, "REGISTER", reg.request_uri, challenge
                )
                self._send_register(authorization)
            except RegistrationError as exc:
                fut.set_exception(exc)
        elif code in (401, 403):
            self.txns.terminate(branch)
            logger.error("Authentication rejected: %s", msg.status_line)
            fut.set_exception(
                AuthenticationError(f"Authentication failed: {msg.status_line}")
            )
        elif code >= 300:
            self.txns.terminate(branch)
            logger.error("Registration failed: %s", msg.status_line)
            fut.set_exception(
                RegistrationError(f"Registration failed: {msg.status_line}")
            )

    def _on_register_error(self, exc: Exception) -> None:
        fut = self._register_future
        if fut is not None and not fut.done():
            fut.set_exception(RegistrationError(f"Registration failed: {exc}"))

    def _send_unregister(self) -> None:
        reg = self.registration
        reg.cseq += 1
        message = build_register(reg, generate_branch(), expires=0)
        self._send(message, self.registrar_addr)
        logger.info("Sent unREGISTER for %s", reg.aor)

    # -- outbound calls ------------------------------------------------------

    async def make_call(self, number: str, duration: float = 10.0) -> CallResult:
        """Call ``number`` and keep the call up for ``duration`` seconds.

        Returns when the call ends (duration elapsed, remote BYE or local
        hangup). Raises CallRejected when the callee declines and CallError
        for every other failure.
        """
        if not self.registered:
            raise CallError("Cannot make call: not registered")
        if self.call is not None or self.pending is not None:
            raise CallError("Cannot make call: another call is in progress")

        loop = asyncio.get_running_loop()
        reg = self.registration
        target = f"sip:{number}@{reg.domain}"
        call = Call(
            call_id=generate_call_id(self.local_ip),
            direction=Direction.OUTBOUND,
            local_header=f"<{reg.aor}>;tag={generate_tag()}",
            remote_header=f"<{target}>",
            remote_target=target,
            remote_addr=self.registrar_addr,
            number=number,
            state=CallState.CALLING,
            duration=duration,
            invite_branch=generate_branch(),
            future=loop.create_future(),
        )
        self.call = call
        assert call.invite_branch is not None and call.future is not None

        sdp = build_sdp_offer(self.local_ip, self.rtp_port, reg.username)
        message = build_invite(call, call.invite_branch, reg, sdp)
        txn = self.txns.create(
            call.invite_branch,
            "INVITE",
            message,
            functools.partial(self._on_invite_response, call),
            addr=call.remote_addr,
            on_error=functools.partial(self._on_invite_error, call),
        )
        call.setup_timer = loop.call_later(
            self.call_setup_timeout, self._on_setup_timeout, call
        )
        logger.info("Calling %s (Call-ID %s)", target, call.call_id)

        try:
            self.txns.send(txn)
            result = await call.future
        except SendError as exc:
            self._end_call(call)
            self.stats.record_call(False)
            raise CallError(f"Call failed: {exc}") from exc
        except SipError:
            self.stats.record_call(False)
            raise
        except asyncio.CancelledError:
            if call.state != CallState.TERMINATED:
                self._hangup_call(call)
            raise

        self.stats.record_call(True)
        logger.info("Call %s completed (%s)", call.call_id, result.ended_by)
        return result

    def _on_invite_response(
        self, call: Call, msg: SipMessage, addr: tuple[str, int]
    ) -> None:
        code = msg.status_code
        if code is None or call.state == CallState.TERMINATED:
            return

        if code < 200:
            if code in (180, 183) and call.state == CallState.CALLING:
                call.state = CallState.RINGING
                logger.info("Call %s ringing (%d)", call.call_id, code)
            else:
                logger.debug("Call %s: %s", call.call_id, msg.status_line)
        elif code < 300:
            if call.state == CallState.ESTABLISHED:
                # Our ACK was lost; the callee is retransmitting its 200
                self._send_ack(call)
                return
            self._answered(call, msg)
        elif code in REJECT_CODES:
            logger.info("Call %s rejected: %s", call.call_id, msg.status_line)
            self._fail_call(call, CallRejected(msg.status_line))
        else:
            logger.warning("Call %s failed: %s", call.call_id, msg.status_line)
            self._fail_call(call, CallError(f"Call failed: {msg.status_line}"))

    def _answered(self, call: Call, msg: SipMessage) -> None:
        _cancel(call.setup_timer)
        call.setup_timer = None
        call.state = CallState.ESTABLISHED
        call.started_at = time.monotonic()
        call.remote_header = msg.header("To") or call.remote_header
        contact = msg.header("Contact")
        if contact:
            call.remote_target = extract_uri(contact)
        logger.info("Call %s answered", call.call_id)

        self._adopt_remote_sdp(call, msg.body)
        self._start_rtp(call)
        self._send_ack(call)

        loop = asyncio.get_running_loop()
        call.duration_timer = loop.call_later(
            call.duration, self._on_duration_elapsed, call
        )

    def _adopt_remote_sdp(self, call: Call, body: str) -> None:
        if not body:
            logger.warning("No SDP in answer for %s; continuing without media", call.call_id)
            return
        try:
            sdp = parse_sdp(body)
        except SdpParseError as exc:
            logger.warning("Continuing %s without media: %s", call.call_id, exc)
            return
        call.remote_rtp = (sdp.connection_address, sdp.audio_port)
        logger.info("Remote RTP endpoint %s:%d", *call.remote_rtp)

    def _send_ack(self, call: Call) -> None:
        self._send(build_ack(call, generate_branch(), self.registration), call.remote_addr)
        logger.debug("ACK sent for %s", call.call_id)

    def _on_invite_error(self, call: Call, exc: Exception) -> None:
        if call.state != CallState.TERMINATED:
            logger.error("Call %s failed: %s", call.call_id, exc)
            error = CallError(f"Call failed: {exc}")
            error.__cause__ = exc
            self._fail_call(call, error)

    def _on_setup_timeout(self, call: Call) -> None:
        call.setup_timer = None
        if call.state in (CallState.CALLING, CallState.RINGING):
            logger.error("Call %s establishment timeout", call.call_id)
            self._fail_call(call, CallError("Call establishment timeout"))

    def _on_duration_elapsed(self, call: Call) -> None:
        call.duration_timer = None
        if call.state != CallState.ESTABLISHED or call is not self.call:
            return
        logger.info("Call %s duration reached, hanging up", call.call_id)
        self._send_bye(call)
        self._finish_call(call, "local")

    # -- inbound calls -------------------------------------------------------

    def _handle_invite(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        call_id = msg.call_id
        if self.pending is not None and self.pending.call_id == call_id:
            logger.debug("Retransmitted INVITE for pending call %s", call_id)
            return
        call = self.call
        if call is not None and call.call_id == call_id and call.server_txn is not None:
            call.server_txn.receive_retransmit()
            return
        if call is not None or self.pending is not None:
            logger.info("Busy: rejecting INVITE %s from %s:%d", call_id, *addr)
            self._send(build_response(msg, 486, "Busy Here", to_tag=generate_tag()), addr)
            return

        remote_rtp: tuple[str, int] | None = None
        try:
            sdp = parse_sdp(msg.body)
        except SdpParseError as exc:
            logger.warning("INVITE %s has no usable SDP: %s", call_id, exc)
        else:
            remote_rtp = (sdp.connection_address, sdp.audio_port)

        from_header = msg.header("From") or ""
        self.pending = PendingInvite(
            message=msg,
            addr=addr,
            call_id=call_id,
            from_header=from_header,
            to_header=msg.header("To") or "",
            contact=extract_uri(msg.header("Contact") or f"<sip:{addr[0]}:{addr[1]}>"),
            remote_rtp=remote_rtp,
        )
        logger.info("Incoming call from %s (Call-ID %s)", self.pending.caller, call_id)

    def answer_call(self) -> Call:
        """Accept the pending invitation with a 200 OK and start media."""
        pending = self.pending
        if pending is None:
            raise CallError("No incoming call to answer")

        invite = pending.message
        to_tag = extract_tag(pending.to_header) or generate_tag()
        local_header = pending.to_header
        if ";tag=" not in local_header:
            local_header = f"{local_header};tag={to_tag}"
        call = Call(
            call_id=pending.call_id,
            direction=Direction.INBOUND,
            local_header=local_header,
            remote_header=pending.from_header,
            remote_target=pending.contact,
            remote_addr=pending.addr,
            number=pending.caller,
            state=CallState.ESTABLISHED,
            remote_rtp=pending.remote_rtp,
            cseq=0,
            invite=invite,
            started_at=time.monotonic(),
        )
        sdp = build_sdp_answer(self.local_ip, self.rtp_port, self.registration.username)
        ok = build_response(
            invite,
            200,
            "OK",
            body=sdp,
            to_tag=to_tag,
            extra_headers=[("Contact", self.registration.contact), ("Allow", ALLOW)],
        )
        call.server_txn = InviteServerTxn(
            extract_branch(invite) or generate_branch(),
            self.txns.sendto,
            asyncio.get_running_loop(),
            functools.partial(self._on_ack_timeout, call),
            t1=self.txns.t1,
            t2=self.txns.t2,
        )
        self.pending = None
        self.call = call
        try:
            call.server_txn.send_2xx(ok, pending.addr)
        except SendError as exc:
            self._end_call(call)
            raise CallError(f"Failed to answer call: {exc}") from exc

        logger.info("Answered call %s from %s", call.call_id, call.number)
        self._start_rtp(call)
        return call

    def reject_current_incoming_call(self) -> bool:
        pending = self.pending
        if pending is None:
            return False
        self._send(
            build_response(pending.message, 486, "Busy Here", to_tag=generate_tag()),
            pending.addr,
        )
        self.pending = None
        logger.info("Rejected incoming call %s", pending.call_id)
        return True

    def _on_ack_timeout(self, call: Call) -> None:
        if call is not self.call or call.state != CallState.ESTABLISHED:
            return
        logger.warning("No ACK for answered call %s, hanging up", call.call_id)
        self._send_bye(call)
        self._end_call(call)

    def _handle_ack(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        call = self.call
        if call is None or call.call_id != msg.call_id:
            logger.debug("ACK for unknown call %s", msg.call_id)
            return
        if call.server_txn is not None:
            call.server_txn.receive_ack()
        if self.rtp is not None and not self.rtp.running:
            self._start_rtp(call)

    def _handle_bye(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        # BYE always clears local call state, matched or not
        self._send(build_response(msg, 200, "OK"), addr)
        if self.pending is not None:
            logger.info("BYE cleared pending invitation %s", self.pending.call_id)
            self.pending = None
        call = self.call
        if call is None:
            self._stop_rtp()
            return
        if call.call_id != msg.call_id:
            logger.warning(
                "BYE for %s while %s is active; clearing anyway",
                msg.call_id,
                call.call_id,
            )
        logger.info("Call %s ended by remote party", call.call_id)
        self._finish_call(call, "remote")

    def _handle_cancel(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        pending = self.pending
        if pending is None or pending.call_id != msg.call_id:
            self._send(build_response(msg, 481, "Call/Transaction Does Not Exist"), addr)
            return
        # RFC 3261 §9.2: 200 to the CANCEL, then 487 to the INVITE
        to_tag = generate_tag()
        self._send(build_response(msg, 200, "OK", to_tag=to_tag), addr)
        self._send(
            build_response(pending.message, 487, "Request Terminated", to_tag=to_tag),
            pending.addr,
        )
        self.pending = None
        logger.info("Incoming call %s cancelled by caller", pending.call_id)

    def _handle_options(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        self._send(
            build_response(
                msg,
                200,
                "OK",
                to_tag=generate_tag(),
                extra_headers=[("Allow", ALLOW), ("Accept", "application/sdp")],
            ),
            addr,
        )

    # -- teardown ------------------------------------------------------------

    def hangup(self) -> str:
        """End whatever call exists; returns what was done."""
        if self.pending is not None:
            self.reject_current_incoming_call()
            return "rejected"
        call = self.call
        if call is None:
            raise CallError("No active call")
        return self._hangup_call(call)

    def _hangup_call(self, call: Call) -> str:
        if call.state == CallState.ESTABLISHED:
            self._send_bye(call)
            self._finish_call(call, "local")
            return "hung_up"
        # Still ringing: cancel the INVITE
        self._send(build_cancel(call, self.registration), call.remote_addr)
        self._fail_call(call, CallError("Call cancelled"))
        return "cancelled"

    def _send_bye(self, call: Call) -> None:
        call.cseq += 1
        branch = generate_branch()
        message = build_bye(call, branch, self.registration, call.cseq)

        def on_response(msg: SipMessage, addr: tuple[str, int]) -> None:
            if msg.status_code is not None and msg.status_code >= 200:
                self.txns.terminate(branch)

        def on_error(exc: Exception) -> None:
            logger.warning("BYE for %s failed: %s", call.call_id, exc)

        txn = self.txns.create(
            branch, "BYE", message, on_response, addr=call.remote_addr, on_error=on_error
        )
        try:
            self.txns.send(txn)
        except SendError as exc:
            logger.warning("Could not send BYE for %s: %s", call.call_id, exc)
            return
        logger.info("Sent BYE for %s", call.call_id)

    def _finish_call(self, call: Call, ended_by: str) -> None:
        sent, received = self._end_call(call)
        if call.future is not None and not call.future.done():
            call.future.set_result(
                CallResult(
                    call_id=call.call_id,
                    number=call.number,
                    direction=call.direction,
                    duration=call.duration,
                    ended_by=ended_by,
                    rtp_packets_sent=sent,
                    rtp_packets_received=received,
                )
            )

    def _fail_call(self, call: Call, exc: CallError) -> None:
        self._end_call(call)
        if call.future is not None and not call.future.done():
            call.future.set_exception(exc)

    def _end_call(self, call: Call) -> tuple[int, int]:
        call.state = CallState.TERMINATED
        _cancel(call.setup_timer)
        _cancel(call.duration_timer)
        call.setup_timer = None
        call.duration_timer = None
        if call.invite_branch is not None:
            self.txns.terminate(call.invite_branch)
        if call.server_txn is not None:
            call.server_txn.terminate()
        counts = self._stop_rtp()
        if self.call is call:
            self.call = None
        return counts

    # -- media ---------------------------------------------------------------

    def _start_rtp(self, call: Call) -> None:
        if self.rtp is None or call.remote_rtp is None:
            return
        self.rtp.start(*call.remote_rtp)

    def _stop_rtp(self) -> tuple[int, int]:
        if self.rtp is None:
            return 0, 0
        sent, received = self.rtp.stop()
        self.stats.add_rtp(sent, received)
        return sent, received


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
