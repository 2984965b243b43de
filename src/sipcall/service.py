"""Phone service: owns one SIP client plus lifetime statistics."""

from __future__ import annotations

import logging
from typing import Any

from sipcall.rtp.pcmu import render_tone
from sipcall.sip.client import SipClient
from sipcall.sip.errors import CallError, SipError
from sipcall.stats import Statistics

logger = logging.getLogger(__name__)


class PhoneService:
    """Facade the HTTP API talks to.

    ``configure`` replaces any existing client; every other operation needs
    one to exist and raises :class:`SipError` subclasses otherwise.
    """

    def __init__(self, *, tone_hz: float = 0.0, **client_kwargs: Any) -> None:
        self.stats = Statistics()
        self.client: SipClient | None = None
        self._tone_hz = tone_hz
        self._client_kwargs = client_kwargs

    async def configure(
        self,
        server: str,
        username: str,
        password: str,
        domain: str | None = None,
        port: int = 5060,
        local_port: int = 0,
    ) -> dict[str, Any]:
        """Start a fresh client for the given account and register it."""
        if not server or not username or not password:
            raise SipError("server, username and password are required")
        self.close()

        audio_buf = render_tone(self._tone_hz) if self._tone_hz > 0 else None
        client = SipClient(
            server=server,
            username=username,
            password=password,
            domain=domain or server,
            port=int(port),
            local_port=int(local_port),
            audio_buf=audio_buf,
            stats=self.stats,
            **self._client_kwargs,
        )
        self.client = client
        try:
            await client.start()
            await client.register()
        except SipError as exc:
            logger.error("Configuration of %s@%s failed: %s", username, server, exc)
            self.close()
            raise
        return client.status()

    def _require_client(self) -> SipClient:
        if self.client is None:
            raise SipError("SIP client not configured")
        return self.client

    async def call(self, number: str, duration: float = 10.0) -> dict[str, Any]:
        if not number:
            raise CallError("number is required")
        result = await self._require_client().make_call(number, float(duration))
        return result.as_dict()

    def answer(self) -> dict[str, Any]:
        call = self._require_client().answer_call()
        return call.summary()

    def reject(self) -> dict[str, Any]:
        rejected = self._require_client().reject_current_incoming_call()
        if not rejected:
            raise CallError("No incoming call to reject")
        return {"rejected": True}

    def hangup(self) -> dict[str, Any]:
        return {"result": self._require_client().hangup()}

    def status(self, detailed: bool = False) -> dict[str, Any]:
        if self.client is None:
            return {"configured": False, "registered": False}
        data = {"configured": True, **self.client.status()}
        if not detailed:
            return {
                k: data[k]
                for k in ("configured", "registered", "active_call", "pending_call")
            }
        data["statistics"] = self.statistics()
        return data

    def statistics(self) -> dict[str, Any]:
        rtp = self.client.rtp if self.client is not None else None
        if rtp is not None and rtp.running:
            return self.stats.snapshot(rtp.packets_sent, rtp.packets_received)
        return self.stats.snapshot()

    def reset(self) -> dict[str, Any]:
        self.close()
        self.stats = Statistics()
        logger.info("Service reset")
        return {"reset": True}

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
