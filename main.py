"""sipcall entrypoint: control API plus an optional startup registration."""

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from sipcall.service import PhoneService
from sipcall.sip.errors import SipError
from sipcall.web import create_app, start_webapp, stop_webapp

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    server = os.environ.get("SIP_SERVER", "")
    username = os.environ.get("SIP_USERNAME", "")
    password = os.environ.get("SIP_PASSWORD", "")
    domain = os.environ.get("SIP_DOMAIN") or None
    sip_port = int(os.environ.get("SIP_PORT", "5060"))
    local_port = int(os.environ.get("SIP_LOCAL_PORT", "0"))
    tone_hz = float(os.environ.get("SIP_TONE_HZ", "0"))
    web_host = os.environ.get("WEB_HOST", "0.0.0.0")
    web_port = int(os.environ.get("WEB_PORT", "8080"))

    loop = asyncio.get_running_loop()
    service = PhoneService(tone_hz=tone_hz)

    # Register at startup when an account is configured in the environment
    if server and username and password:
        try:
            await service.configure(
                server, username, password, domain, sip_port, local_port
            )
        except SipError as exc:
            logger.error("Startup registration failed: %s", exc)

    app = create_app(service)
    runner = await start_webapp(app, web_host, web_port)

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        service.close()
        await stop_webapp(runner)


if __name__ == "__main__":
    asyncio.run(main())
