"""
WhatsApp Channel Adapter: user-managed WhatsApp via the WhatsApp Web protocol.

A headless Chromium (Playwright) runs with a persistent profile directory per
user, the same way the desktop web client keeps its login:

- First run: the page shows a QR code; each new code is published as a
  ``qr`` event until the user scans it with their phone.
- Once the chat list appears the session is paired, the own number is read
  from local storage and the handle becomes linked.
- Later runs reuse the stored profile and pair without a QR code.

Pairing is out-of-band, so ``start()`` returns while the handle is still in
``linking``; a background watcher completes it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import quote

from luvora.messaging.channels.base import BaseChannel
from luvora.messaging.errors import ConfigurationInvalid, ConnectionFailed, SendFailed
from luvora.messaging.events import EventKind
from luvora.messaging.types import ChannelState, Platform

logger = logging.getLogger(__name__)

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"
WHATSAPP_MAX_LENGTH = 65536

_PHONE_RE = re.compile(r"^\+?\d{6,15}$")

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]


@dataclass
class PairingProbe:
    """What the WhatsApp Web page currently shows."""

    qr: Optional[str] = None
    linked: bool = False
    phone_number: Optional[str] = None


class WhatsAppWebSession:
    """Playwright-driven WhatsApp Web page backed by a persistent profile."""

    QR_SELECTOR = "div[data-ref]"
    CHAT_LIST_SELECTOR = "#pane-side"
    COMPOSE_SELECTOR = "footer div[contenteditable='true']"
    OWN_WID_SCRIPT = (
        "() => (localStorage.getItem('last-wid-md') || localStorage.getItem('last-wid') || '')"
    )

    def __init__(self, session_dir: Path, headless: bool = True, send_timeout_ms: int = 45000):
        self.session_dir = session_dir
        self.headless = headless
        self.send_timeout_ms = send_timeout_ms
        self._playwright = None
        self._context = None
        self._page = None
        # Status checks and sends share one page and must not overlap
        self._page_lock = asyncio.Lock()

    async def open(self) -> None:
        try:
            from playwright.async_api import async_playwright
        except ImportError:
            raise ConnectionFailed(
                "Playwright not installed. Run: pip install playwright && playwright install chromium",
                Platform.WHATSAPP,
            )

        self._playwright = await async_playwright().start()
        self._context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.session_dir),
            headless=self.headless,
            args=BROWSER_ARGS,
        )
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        await self._page.goto(WHATSAPP_WEB_URL, wait_until="domcontentloaded", timeout=60000)
        logger.info("[WHATSAPP] Web client opened (profile=%s)", self.session_dir)

    async def probe(self) -> PairingProbe:
        async with self._page_lock:
            return await self._probe()

    async def _probe(self) -> PairingProbe:
        page = self._page
        if page is None:
            return PairingProbe()

        if await page.query_selector(self.CHAT_LIST_SELECTOR):
            wid = await page.evaluate(self.OWN_WID_SCRIPT) or ""
            # Stored as "\"15551234567:12@c.us\"" on multi-device
            phone = wid.strip('"').split("@")[0].split(":")[0] or None
            return PairingProbe(linked=True, phone_number=phone)

        qr_el = await page.query_selector(self.QR_SELECTOR)
        if qr_el:
            return PairingProbe(qr=await qr_el.get_attribute("data-ref"))
        return PairingProbe()

    async def send_text(self, phone: str, text: str) -> None:
        async with self._page_lock:
            page = self._page
            if page is None:
                raise ConnectionFailed("WhatsApp Web page is closed", Platform.WHATSAPP)
            url = f"{WHATSAPP_WEB_URL}send?phone={phone}&text={quote(text)}"
            await page.goto(url, wait_until="domcontentloaded", timeout=self.send_timeout_ms)
            compose = await page.wait_for_selector(self.COMPOSE_SELECTOR, timeout=self.send_timeout_ms)
            await compose.press("Enter")
            # Let the outgoing bubble leave the compose box before navigating again
            await page.wait_for_timeout(1500)

    async def close(self) -> None:
        context, self._context = self._context, None
        playwright, self._playwright = self._playwright, None
        self._page = None
        if context is not None:
            try:
                await context.close()
            except Exception:
                logger.warning("[WHATSAPP] Error closing browser context", exc_info=True)
        if playwright is not None:
            await playwright.stop()


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp Web channel adapter.

    ``session_factory`` builds the browser session for a profile directory;
    tests pass a fake with scripted probes.
    """

    platform = Platform.WHATSAPP
    max_message_length = WHATSAPP_MAX_LENGTH

    def __init__(self, identity, config, events, settings,
                 session_factory: Optional[Callable[[Path], Any]] = None,
                 poll_interval: Optional[float] = None):
        super().__init__(identity, config, events, settings)
        self._session_factory = session_factory or self._default_session
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.whatsapp_poll_interval_seconds
        )
        self._session: Optional[Any] = None
        self._watcher: Optional[asyncio.Task] = None
        self._last_qr: Optional[str] = None
        self.phone_number: Optional[str] = config.phone_number
        self.session_dir = Path(
            config.session_path or Path(settings.whatsapp_session_root) / identity.user_id
        )

    def _default_session(self, session_dir: Path) -> WhatsAppWebSession:
        return WhatsAppWebSession(
            session_dir,
            headless=self.settings.whatsapp_headless,
            send_timeout_ms=self.settings.whatsapp_send_timeout_ms,
        )

    # ── Capabilities ──────────────────────────────────────────

    def is_linked(self) -> bool:
        return self.linked and self.state is ChannelState.CONNECTED

    def has_session(self) -> bool:
        """True if a QR code was scanned before (browser profile holds IndexedDB)."""
        return (self.session_dir / "Default" / "IndexedDB").exists()

    @property
    def pending_qr(self) -> Optional[str]:
        return self._last_qr if self.state is ChannelState.LINKING else None

    # ── Lifecycle hooks ───────────────────────────────────────

    async def _validate(self) -> None:
        if self.config.phone_number and not _PHONE_RE.match(self.config.phone_number.replace(" ", "")):
            raise ConfigurationInvalid(
                f"Malformed phone number: {self.config.phone_number}", self.platform, "INVALID_PHONE"
            )
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationInvalid(
                f"Session directory not usable: {self.session_dir} ({exc})", self.platform, "INVALID_SESSION_PATH"
            ) from exc

    async def _connect(self) -> bool:
        self._session = self._session_factory(self.session_dir)
        await self._session.open()
        # Nothing may await between here and start() entering linking.
        self._watcher = asyncio.create_task(self._watch_pairing())
        return False

    async def _disconnect(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    # ── Pairing ───────────────────────────────────────────────

    async def _watch_pairing(self) -> None:
        """Poll the page: publish new QR codes, finish pairing, spot logouts."""
        while self.state in (ChannelState.STARTING, ChannelState.LINKING, ChannelState.CONNECTED):
            try:
                probe = await self._session.probe()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[WHATSAPP] Pairing watcher failed for %s", self.identity)
                self._fail(ConnectionFailed(f"WhatsApp Web session lost: {exc}", self.platform))
                return

            if self.state is ChannelState.LINKING:
                if probe.linked:
                    self.complete_pairing(probe.phone_number)
                elif probe.qr and probe.qr != self._last_qr:
                    self._issue_qr(probe.qr)
            elif self.state is ChannelState.CONNECTED and probe.qr:
                self._fail(ConnectionFailed("WhatsApp Web session was logged out", self.platform, "LOGGED_OUT"))
                return

            await asyncio.sleep(self._poll_interval)

    def _issue_qr(self, qr: str) -> None:
        self._last_qr = qr
        logger.info("[WHATSAPP] QR code generated for user %s", self.identity.user_id)
        self._publish(EventKind.QR, qr=qr)

    def complete_pairing(self, phone_number: Optional[str] = None) -> None:
        """Mark out-of-band pairing done. Ignored unless the handle is linking."""
        if self.state is not ChannelState.LINKING:
            return
        self.phone_number = phone_number or self.phone_number
        logger.info("[WHATSAPP] Client ready for user %s (phone=%s)", self.identity.user_id, self.phone_number)
        self._mark_linked(phone_number=self.phone_number)

    # ── Outbound ──────────────────────────────────────────────

    async def _deliver(self, target: Optional[str], body: str) -> None:
        raw = target or self.recipient_id or self.phone_number
        if not raw:
            raise SendFailed(
                "Phone number not set. WhatsApp must be linked first.", self.platform, "no_recipient"
            )
        # Accept "15551234567@c.us" chat ids as well as plain numbers
        phone = re.sub(r"\D", "", raw.split("@")[0])
        if not phone:
            raise SendFailed(f"Invalid WhatsApp target: {raw}", self.platform, "bad_target")
        await self._session.send_text(phone, body)

    def _categorize(self, exc: BaseException) -> str:
        name = type(exc).__name__
        if name == "TimeoutError" or isinstance(exc, asyncio.TimeoutError):
            return "timeout"
        return super()._categorize(exc)

    def to_dict(self):
        data = super().to_dict()
        data["phone_number"] = self.phone_number
        return data
