"""Tests for client transactions (retransmission, timeouts) and the INVITE
server transaction (Timer G/H)."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from sipcall.sip.errors import SendError, TransactionTimeout
from sipcall.sip.message import build_request, parse_message
from sipcall.sip.transaction import (
    MAX_INVITE_RETRANSMITS,
    MAX_NON_INVITE_RETRANSMITS,
    InviteServerTxn,
    TransactionManager,
    TxnState,
)

from .conftest import FakeTransport

ADDR = ("10.0.0.1", 5060)
RESPONSE = b"SIP/2.0 200 OK\r\n\r\n"
BRANCH = "z9hG4bKtest001"
CALL_ID = "txn-test@10.0.0.5"


def _request(method: str = "OPTIONS", branch: str = BRANCH) -> bytes:
    return build_request(
        method,
        "sip:example.com",
        headers=[
            ("Via", f"SIP/2.0/UDP 10.0.0.5:5062;branch={branch}"),
            ("From", "<sip:alice@example.com>;tag=1"),
            ("To", "<sip:example.com>"),
            ("Call-ID", CALL_ID),
            ("CSeq", f"1 {method}"),
        ],
    )


def _response(code: int, branch: str = BRANCH, call_id: str = CALL_ID) -> bytes:
    return (
        f"SIP/2.0 {code} Whatever\r\n"
        f"Via: SIP/2.0/UDP 10.0.0.5:5062;branch={branch}\r\n"
        f"Call-ID: {call_id}\r\n"
        "CSeq: 1 OPTIONS\r\n"
        "Content-Length: 0\r\n\r\n"
    ).encode()


def _manager(
    t1: float = 0.01, t2: float = 0.02
) -> tuple[TransactionManager, FakeTransport]:
    transport = FakeTransport()
    mgr = TransactionManager(t1=t1, t2=t2)
    mgr.attach(transport)
    return mgr, transport


# ---------------------------------------------------------------------------
# Client transactions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_transmits_immediately():
    mgr, transport = _manager()
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)
    mgr.send(txn)
    assert transport.sent == [(_request(), ADDR)]
    assert txn.call_id == CALL_ID
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_duplicate_branch_rejected():
    mgr, _ = _manager()
    mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)
    with pytest.raises(ValueError):
        mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "cap"),
    [("INVITE", MAX_INVITE_RETRANSMITS), ("REGISTER", MAX_NON_INVITE_RETRANSMITS)],
)
async def test_retransmits_stop_at_cap(method: str, cap: int):
    """The request goes out 1 + cap times, then the transaction times out."""
    mgr, transport = _manager(t1=0.01, t2=0.01)
    errors: list[Exception] = []
    txn = mgr.create(
        BRANCH, method, _request(method), addr=ADDR, on_error=errors.append
    )
    mgr.send(txn)
    await asyncio.sleep(0.4)
    assert len(transport.sent) == 1 + cap
    assert txn.retransmit_count == cap
    assert BRANCH not in mgr
    assert len(errors) == 1
    assert isinstance(errors[0], TransactionTimeout)


@pytest.mark.asyncio
async def test_last_retransmit_terminates_immediately():
    mgr, transport = _manager(t1=10.0, t2=10.0)
    errors: list[Exception] = []
    txn = mgr.create(
        BRANCH, "INVITE", _request("INVITE"), addr=ADDR, on_error=errors.append
    )
    mgr.send(txn)
    txn.retransmit_count = MAX_INVITE_RETRANSMITS - 1
    mgr._fire_retransmit(txn)
    assert len(transport.sent) == 2
    assert txn.retransmit_count == MAX_INVITE_RETRANSMITS
    assert BRANCH not in mgr
    assert txn.retransmit_timer is None
    assert len(errors) == 1
    assert isinstance(errors[0], TransactionTimeout)


@pytest.mark.asyncio
async def test_absolute_timeout_without_cap():
    """A long T2 keeps retransmits rare, so 32*T1 elapses first."""
    mgr, transport = _manager(t1=0.01, t2=1.0)
    errors: list[Exception] = []
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR, on_error=errors.append)
    mgr.send(txn)
    await asyncio.sleep(0.45)
    assert BRANCH not in mgr
    assert txn.state == TxnState.TERMINATED
    assert txn.retransmit_count < MAX_NON_INVITE_RETRANSMITS
    assert len(errors) == 1
    assert isinstance(errors[0], TransactionTimeout)


@pytest.mark.asyncio
async def test_interval_doubles_up_to_t2():
    mgr, _ = _manager(t1=0.01, t2=0.04)
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)
    mgr.send(txn)
    await asyncio.sleep(0.1)
    assert txn.interval == 0.04
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_final_response_completes_and_stops_retransmits():
    mgr, transport = _manager()
    received: list[int] = []
    txn = mgr.create(
        BRANCH,
        "OPTIONS",
        _request(),
        lambda msg, addr: received.append(msg.status_code or 0),
        addr=ADDR,
    )
    mgr.send(txn)
    assert mgr.dispatch(parse_message(_response(200)), ADDR)
    assert received == [200]
    assert txn.completed
    assert txn.state == TxnState.COMPLETED
    count = len(transport.sent)
    await asyncio.sleep(0.1)
    assert len(transport.sent) == count
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_provisional_moves_invite_to_proceeding():
    mgr, transport = _manager()
    errors: list[Exception] = []
    txn = mgr.create(
        BRANCH, "INVITE", _request("INVITE"), addr=ADDR, on_error=errors.append
    )
    mgr.send(txn)
    mgr.on_response(BRANCH, 180)
    assert txn.state == TxnState.PROCEEDING
    assert not txn.completed
    assert txn.timeout_timer is not None
    await asyncio.sleep(0.3)
    # Ringing stops retransmits
    assert len(transport.sent) == 1
    assert BRANCH in mgr
    assert errors == []
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_ringing_invite_still_times_out():
    """64*T1 terminates the INVITE even after a provisional response."""
    mgr, transport = _manager()
    errors: list[Exception] = []
    txn = mgr.create(
        BRANCH, "INVITE", _request("INVITE"), addr=ADDR, on_error=errors.append
    )
    mgr.send(txn)
    mgr.on_response(BRANCH, 180)
    await asyncio.sleep(0.94)
    assert BRANCH not in mgr
    assert txn.state == TxnState.TERMINATED
    assert len(transport.sent) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], TransactionTimeout)


@pytest.mark.asyncio
async def test_401_stops_retransmits_without_completing():
    mgr, transport = _manager()
    txn = mgr.create(BRANCH, "REGISTER", _request("REGISTER"), addr=ADDR)
    mgr.send(txn)
    mgr.on_response(BRANCH, 401)
    assert not txn.completed
    assert BRANCH in mgr
    await asyncio.sleep(0.05)
    assert len(transport.sent) == 1
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_dispatch_rejects_stray_responses():
    mgr, _ = _manager()
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)
    mgr.send(txn)
    assert not mgr.dispatch(parse_message(_response(200, branch="z9hG4bKother")), ADDR)
    assert not mgr.dispatch(parse_message(_response(200, call_id="other")), ADDR)
    assert not txn.completed
    mgr.terminate(BRANCH)


@pytest.mark.asyncio
async def test_terminate_reports_error_once_and_drops_handler():
    mgr, _ = _manager()
    errors: list[Exception] = []
    received: list[object] = []
    txn = mgr.create(
        BRANCH,
        "OPTIONS",
        _request(),
        lambda msg, addr: received.append(msg),
        addr=ADDR,
        on_error=errors.append,
    )
    mgr.send(txn)
    mgr.terminate(BRANCH, TransactionTimeout("first"))
    mgr.terminate(BRANCH, TransactionTimeout("second"))
    assert [str(e) for e in errors] == ["first"]
    assert txn.on_message is None
    assert not mgr.dispatch(parse_message(_response(200)), ADDR)
    assert received == []


@pytest.mark.asyncio
async def test_stale_timer_after_terminate_is_noop():
    mgr, transport = _manager()
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR)
    mgr.send(txn)
    mgr.terminate(BRANCH)
    mgr._fire_retransmit(txn)
    mgr._fire_timeout(txn)
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_terminate_all_by_method():
    mgr, _ = _manager()
    for i, method in enumerate(["REGISTER", "REGISTER", "BYE"]):
        mgr.create(f"z9hG4bK{i}", method, _request(method, f"z9hG4bK{i}"), addr=ADDR)
    assert mgr.terminate_all("REGISTER") == 2
    assert len(mgr) == 1
    assert mgr.terminate_all() == 1
    assert len(mgr) == 0


@pytest.mark.asyncio
async def test_send_failure_terminates_and_raises():
    mgr, transport = _manager()
    transport.close()
    errors: list[Exception] = []
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR, on_error=errors.append)
    with pytest.raises(SendError):
        mgr.send(txn)
    assert BRANCH not in mgr
    assert errors == []


@pytest.mark.asyncio
async def test_retransmit_failure_reports_error():
    mgr, transport = _manager()
    errors: list[Exception] = []
    txn = mgr.create(BRANCH, "OPTIONS", _request(), addr=ADDR, on_error=errors.append)
    mgr.send(txn)
    transport.close()
    await asyncio.sleep(0.05)
    assert BRANCH not in mgr
    assert len(errors) == 1
    assert isinstance(errors[0], SendError)


@pytest.mark.asyncio
async def test_sendto_without_transport():
    mgr = TransactionManager()
    with pytest.raises(SendError):
        mgr.sendto(b"x", ADDR)


# ---------------------------------------------------------------------------
# INVITE server transaction
# ---------------------------------------------------------------------------


def _make_server_txn(
    loop: asyncio.AbstractEventLoop,
    on_timeout: Callable[[], None] | None = None,
) -> tuple[InviteServerTxn, FakeTransport]:
    transport = FakeTransport()
    txn = InviteServerTxn(
        BRANCH,
        transport.sendto,
        loop,
        on_timeout if on_timeout is not None else (lambda: None),
        t1=0.01,
        t2=0.04,
    )
    return txn, transport


@pytest.mark.asyncio
async def test_send_2xx_sends_response():
    """send_2xx sends the response immediately."""
    txn, transport = _make_server_txn(asyncio.get_running_loop())
    txn.send_2xx(RESPONSE, ADDR)
    assert transport.sent == [(RESPONSE, ADDR)]
    assert txn.state == "accepted"
    txn.terminate()


@pytest.mark.asyncio
async def test_timer_g_retransmits():
    """Timer G keeps re-sending the 2xx until ACK."""
    txn, transport = _make_server_txn(asyncio.get_running_loop())
    txn.send_2xx(RESPONSE, ADDR)
    await asyncio.sleep(0.1)
    assert len(transport.sent) >= 3
    assert all(entry == (RESPONSE, ADDR) for entry in transport.sent)
    txn.terminate()


@pytest.mark.asyncio
async def test_ack_stops_retransmission():
    txn, transport = _make_server_txn(asyncio.get_running_loop())
    txn.send_2xx(RESPONSE, ADDR)
    txn.receive_ack()
    assert txn.state == "confirmed"
    await asyncio.sleep(0.05)
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_invite_retransmit_resends_2xx():
    txn, transport = _make_server_txn(asyncio.get_running_loop())
    txn.send_2xx(RESPONSE, ADDR)
    txn.receive_retransmit()
    assert len(transport.sent) == 2
    txn.terminate()


@pytest.mark.asyncio
async def test_timer_h_fires_without_ack():
    """Timer H (64*T1) reports a timeout when ACK never arrives."""
    timeouts: list[bool] = []
    txn, _ = _make_server_txn(
        asyncio.get_running_loop(), on_timeout=lambda: timeouts.append(True)
    )
    txn.send_2xx(RESPONSE, ADDR)
    await asyncio.sleep(0.8)
    assert timeouts == [True]
    assert txn.state == "terminated"
