"""
Pairing endpoint

Used on first start when neither an access token nor a password is
configured.  A QR code is rendered for the homeserver's SSO login URL and
served as a PNG at ``/login``; the same code is also printed to the log
and written to ``data/qr.png``.  After the operator signs in, the
homeserver redirects the browser to ``/sso-callback?loginToken=...`` and
the token is handed to whoever awaits :meth:`PairingServer.wait_for_login_token`.

The server only runs for the duration of the pairing.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import qrcode
from aiohttp import web

from meowrelay.infra.paths import QR_IMAGE_FILE

logger = logging.getLogger(__name__)


@dataclass
class PairingConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    public_url: str = "http://localhost:3000"


def sso_redirect_url(homeserver: str, public_url: str) -> str:
    """Homeserver URL that starts an SSO login and returns to our callback."""
    callback = f"{public_url.rstrip('/')}/sso-callback"
    return (f"{homeserver.rstrip('/')}/_matrix/client/v3/login/sso/redirect"
            f"?redirectUrl={quote(callback, safe='')}")


def _make_qr(data: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=8, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    return qr


def render_qr_png(data: str) -> bytes:
    buf = io.BytesIO()
    _make_qr(data).make_image().save(buf)
    return buf.getvalue()


def render_qr_text(data: str) -> str:
    out = io.StringIO()
    _make_qr(data).print_ascii(out=out)
    return out.getvalue()


class PairingServer:
    """Serves the pairing QR and collects the SSO login token."""

    def __init__(self, config: PairingConfig, homeserver: str,
                 qr_path: Optional[Path] = QR_IMAGE_FILE) -> None:
        self._cfg = config
        self._homeserver = homeserver
        self._qr_path = qr_path
        self._qr_png: Optional[bytes] = None
        self._token: Optional[asyncio.Future] = None
        self._runner: Optional[web.AppRunner] = None

    @property
    def login_url(self) -> str:
        return sso_redirect_url(self._homeserver, self._cfg.public_url)

    @property
    def pairing(self) -> bool:
        return self._qr_png is not None

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/login",        self._handle_login)
        app.router.add_get("/sso-callback", self._handle_sso_callback)
        return app

    async def start(self) -> None:
        """Render the QR code and start listening."""
        self.prepare()
        if self._qr_path is not None:
            try:
                self._qr_path.parent.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(self._qr_path.write_bytes, self._qr_png)
            except OSError as exc:
                logger.warning("Could not write QR image to %s: %s", self._qr_path, exc)

        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._cfg.host, self._cfg.port)
        await site.start()
        logger.info("Scan this QR code to sign in:\n%s", render_qr_text(self.login_url))
        logger.info("QR code also served at %s/login", self._cfg.public_url.rstrip("/"))

    def prepare(self) -> None:
        """Render the QR code and arm the token future without listening."""
        self._qr_png = render_qr_png(self.login_url)
        self._token = asyncio.get_running_loop().create_future()

    async def wait_for_login_token(self) -> str:
        if self._token is None:
            raise RuntimeError("Pairing has not been started")
        return await self._token

    async def stop(self) -> None:
        self._qr_png = None
        if self._token is not None and not self._token.done():
            self._token.cancel()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_login(self, _request: web.Request) -> web.Response:
        if self._qr_png is None:
            return web.Response(status=404, text="Not pairing")
        return web.Response(body=self._qr_png, content_type="image/png")

    async def _handle_sso_callback(self, request: web.Request) -> web.Response:
        token = request.query.get("loginToken", "")
        if not token:
            return web.Response(status=400, text="Missing loginToken")
        if self._token is None or self._token.done():
            return web.Response(status=409, text="No pairing in progress")
        self._token.set_result(token)
        logger.info("Received SSO login token")
        return web.Response(text="Signed in. You can close this page.")
