"""Pairing client: register, hand the code to a human, poll, then call the API.

One instance per install. Waiting goes through the injected ``clock`` and
``sleep`` so the whole flow can be driven without real delays, and all
state changes are published to subscribers instead of a global event bus.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

import httpx

from client.config import ClientSettings, client_settings
from client.errors import (
    NotAuthenticated,
    RegistrationExpired,
    RegistrationNotFound,
    ServerError,
    TransientError,
)
from client.fingerprint import coarse_client_signal, fingerprint
from client.state import PAIRED, REGISTERED, UNPAIRED, Listener, PairingState, StateSubscribers
from client.storage import FileStorage

logger = logging.getLogger(__name__)

DEVICE_INFO_KEY = "device_info_v1"
DEVICE_TOKEN_KEY = "device_token_v1"

# HTTP 425 Too Early: linked not yet, poll again
HTTP_TOO_EARLY = 425


def parse_timestamp(value: str) -> float:
    """ISO-8601 from the server to epoch seconds."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


@dataclass
class DeviceInfo:
    device_id: str
    code: str
    expires_at: float


@dataclass
class StoredToken:
    token: str = field(repr=False)
    device_id: str
    expires_at: float


OnCode = Callable[[str, Optional[str]], None]


class PairingClient:
    """Drives device pairing and authorized requests for a headless client."""

    def __init__(
        self,
        api_base_url: str,
        storage,
        *,
        web_base_url: Optional[str] = None,
        client_signal: str = "devicepair-cli/0",
        device_name: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        poll_interval: float = 2.5,
        max_wait: float = 300.0,
        max_backoff: float = 30.0,
        refresh_margin: float = 300.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.web_base_url = web_base_url
        self.storage = storage
        self.client_signal = client_signal
        self.device_name = device_name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.max_backoff = max_backoff
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._sleep = sleep
        self._owns_http = http is None
        self._http = http
        self._subscribers = StateSubscribers()
        self._refreshes: dict[str, asyncio.Task] = {}
        self._state = self._load_state()

    @classmethod
    def from_settings(cls, settings: ClientSettings = client_settings, **overrides) -> "PairingClient":
        options = {
            "web_base_url": settings.web_base_url,
            "client_signal": coarse_client_signal(settings.client_name, settings.client_version),
            "timeout": settings.request_timeout_seconds,
            "poll_interval": settings.poll_interval_seconds,
            "max_wait": settings.max_wait_seconds,
            "max_backoff": settings.max_backoff_seconds,
            "refresh_margin": settings.refresh_margin_seconds,
        }
        options.update(overrides)
        storage = options.pop("storage", None) or FileStorage(settings.storage_path)
        return cls(settings.api_base_url, storage, **options)

    async def __aenter__(self) -> "PairingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # ---------- state ---------------------------------------------------------

    @property
    def state(self) -> PairingState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` on every state change. Returns an unsubscribe function."""
        return self._subscribers.subscribe(listener)

    def _set_state(self, state: PairingState) -> None:
        self._state = state
        self._subscribers.publish(state)

    def _load_state(self) -> PairingState:
        token = self.get_stored_token()
        if token is not None:
            return PairingState(status=PAIRED, device_id=token.device_id, token_expires_at=token.expires_at)
        info = self.get_device_info()
        if info is not None:
            return PairingState(
                status=REGISTERED,
                device_id=info.device_id,
                code=info.code,
                code_expires_at=info.expires_at,
            )
        return PairingState()

    # ---------- storage -------------------------------------------------------

    def get_device_info(self) -> Optional[DeviceInfo]:
        data = self.storage.load(DEVICE_INFO_KEY)
        if not data:
            return None
        return DeviceInfo(device_id=data["device_id"], code=data["code"], expires_at=float(data["expires_at"]))

    def get_stored_token(self) -> Optional[StoredToken]:
        data = self.storage.load(DEVICE_TOKEN_KEY)
        if not data:
            return None
        return StoredToken(token=data["token"], device_id=data["device_id"], expires_at=float(data["expires_at"]))

    def _store_token(self, data: dict) -> StoredToken:
        token = StoredToken(
            token=data["token"],
            device_id=data["deviceId"],
            expires_at=parse_timestamp(data["expiresAt"]),
        )
        self.storage.save(DEVICE_TOKEN_KEY, asdict(token))
        self._set_state(PairingState(status=PAIRED, device_id=token.device_id, token_expires_at=token.expires_at))
        return token

    def clear_token(self) -> None:
        """Forget the device token (logout, or test teardown)."""
        self.storage.remove(DEVICE_TOKEN_KEY)
        info = self.get_device_info()
        if info is not None:
            self._set_state(
                PairingState(
                    status=REGISTERED,
                    device_id=info.device_id,
                    code=info.code,
                    code_expires_at=info.expires_at,
                )
            )
        else:
            self._set_state(PairingState(status=UNPAIRED))

    def clear_all(self) -> None:
        """Forget everything this install stored: token, registration and install id."""
        self.storage.clear()
        self._set_state(PairingState(status=UNPAIRED))

    # ---------- http ----------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.api_base_url}/{path.lstrip('/')}"

    def _get_http(self) -> httpx.AsyncClient:
        # created on first request so offline commands never open a client
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return await self._get_http().request(method, self._url(path), **kwargs)
        except httpx.TransportError as exc:
            # includes timeouts
            raise TransientError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code >= 500:
            raise TransientError(f"Server error {resp.status_code}")
        if resp.status_code >= 400:
            raise ServerError(f"Unexpected response {resp.status_code}", status_code=resp.status_code)

    # ---------- pairing -------------------------------------------------------

    async def register_device(self) -> DeviceInfo:
        """Ask the server for a device id and pairing code, and remember them."""
        fp = fingerprint(self.storage, self.client_signal)
        resp = await self._request("POST", "/devices/register", json={"deviceFingerprint": fp})
        self._raise_for_status(resp)
        data = resp.json()

        info = DeviceInfo(
            device_id=data["deviceId"],
            code=data["code"],
            expires_at=parse_timestamp(data["expiresAt"]),
        )
        self.storage.save(DEVICE_INFO_KEY, asdict(info))
        logger.info("Registered device %s", info.device_id)
        self._set_state(
            PairingState(
                status=REGISTERED,
                device_id=info.device_id,
                code=info.code,
                code_expires_at=info.expires_at,
            )
        )
        return info

    def build_pairing_url(self, code: str, source: str = "extension") -> str:
        """URL the human opens in a signed-in browser to approve this device."""
        if not self.web_base_url:
            raise ValueError("web_base_url is not configured")
        url = httpx.URL(f"{self.web_base_url.rstrip('/')}/pair", params={"source": source, "code": code})
        return str(url)

    async def exchange(self, device_id: str, code: str) -> Optional[StoredToken]:
        """One exchange attempt. Returns None while the code is not linked yet."""
        payload = {
            "deviceId": device_id,
            "code": code,
            "deviceFingerprint": fingerprint(self.storage, self.client_signal),
        }
        if self.device_name:
            payload["deviceName"] = self.device_name

        resp = await self._request("POST", "/devices/exchange", json=payload)
        if resp.status_code == HTTP_TOO_EARLY:
            return None
        if resp.status_code == 404:
            raise RegistrationNotFound()
        if resp.status_code == 410:
            raise RegistrationExpired()
        self._raise_for_status(resp)

        token = self._store_token(resp.json())
        self.storage.remove(DEVICE_INFO_KEY)
        return token

    async def poll_exchange_until_linked(
        self,
        device_id: str,
        code: str,
        *,
        interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> Optional[StoredToken]:
        """Poll the exchange until the human links the code.

        Returns the token, or None once ``max_wait`` seconds pass without a
        link. Raises RegistrationExpired / RegistrationNotFound when the code
        is dead. Transient failures back off exponentially up to
        ``max_backoff``. Cancelling the awaiting task stops the loop.
        """
        interval = self.poll_interval if interval is None else interval
        max_wait = self.max_wait if max_wait is None else max_wait
        ceiling = max(self.max_backoff, interval)
        started = self._clock()
        delay = interval
        attempt = 0

        while True:
            attempt += 1
            try:
                token = await self.exchange(device_id, code)
            except TransientError as exc:
                delay = min(delay * 2, ceiling)
                logger.warning("Exchange attempt %d failed (%s), retrying in %.1fs", attempt, exc, delay)
            else:
                if token is not None:
                    logger.info("Device %s paired after %d attempt(s)", device_id, attempt)
                    return token
                delay = interval

            remaining = max_wait - (self._clock() - started)
            if remaining <= 0:
                logger.info("Gave up waiting for device %s to be linked", device_id)
                return None
            await self._sleep(min(delay, remaining))

    async def pair(
        self,
        on_code: Optional[OnCode] = None,
        *,
        interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> Optional[StoredToken]:
        """Full flow: reuse or create a registration, show the code, poll."""
        existing = self.get_stored_token()
        if existing is not None and self._clock() < existing.expires_at:
            return existing

        info = self.get_device_info()
        if info is None or self._clock() >= info.expires_at:
            info = await self.register_device()

        if on_code is not None:
            url = self.build_pairing_url(info.code) if self.web_base_url else None
            on_code(info.code, url)

        return await self.poll_exchange_until_linked(info.device_id, info.code, interval=interval, max_wait=max_wait)

    # ---------- tokens --------------------------------------------------------

    def _needs_refresh(self, token: StoredToken) -> bool:
        return self._clock() >= token.expires_at - self.refresh_margin

    async def refresh(self, force: bool = False) -> StoredToken:
        """Rotate the stored token, sharing one request among concurrent callers."""
        current = self.get_stored_token()
        if current is None:
            raise NotAuthenticated("Device is not paired")

        key = current.device_id
        task = self._refreshes.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh_stored(force))
            self._refreshes[key] = task
            task.add_done_callback(lambda _: self._refreshes.pop(key, None))
        # a cancelled caller must not cancel the refresh other callers wait on
        return await asyncio.shield(task)

    def _drop_rejected(self, rejected: StoredToken) -> Optional[StoredToken]:
        """Forget a token the server refused, unless it was rotated meanwhile.

        Returns the newer stored token when ``rejected`` is no longer the
        current one, otherwise clears the store and returns None.
        """
        current = self.get_stored_token()
        if current is not None and current.token != rejected.token:
            return current
        if current is not None:
            self.clear_token()
        return None

    async def _refresh_stored(self, force: bool) -> StoredToken:
        # Re-read: a refresh that finished a moment ago may already have rotated it
        current = self.get_stored_token()
        if current is None:
            raise NotAuthenticated("Device is not paired")
        if not force and not self._needs_refresh(current):
            return current

        resp = await self._request(
            "POST",
            "/devices/refresh",
            headers={"Authorization": f"Bearer {current.token}"},
        )
        if resp.status_code == 401:
            newer = self._drop_rejected(current)
            if newer is not None:
                return newer
            logger.warning("Refresh rejected for device %s, pairing required", current.device_id)
            raise NotAuthenticated("Stored token was rejected")
        self._raise_for_status(resp)

        token = self._store_token(resp.json())
        logger.info("Refreshed token for device %s", token.device_id)
        return token

    async def _send_authorized(self, token: StoredToken, method: str, path: str, headers: dict, kwargs: dict):
        headers = dict(headers)
        headers["Authorization"] = f"Bearer {token.token}"
        return await self._request(method, path, headers=headers, **kwargs)

    async def authorized_fetch(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send an API request with the device token, refreshing it first if due.

        Never sends the request without a credential: raises NotAuthenticated
        when there is no usable token. A refresh that fails for any reason
        other than a 401 keeps the current token in use until it expires.
        A 401 for a token that was rotated while the request was in flight
        is retried once with the new token.
        """
        token = self.get_stored_token()
        if token is None:
            raise NotAuthenticated("Device is not paired")

        if self._needs_refresh(token):
            try:
                token = await self.refresh()
            except (TransientError, ServerError) as exc:
                if self._clock() >= token.expires_at:
                    raise NotAuthenticated("Token expired and could not be refreshed") from exc
                logger.warning("Token refresh failed (%s), using current token until it expires", exc)

        headers = kwargs.pop("headers", None) or {}
        resp = await self._send_authorized(token, method, path, headers, kwargs)
        if resp.status_code != 401:
            return resp

        newer = self._drop_rejected(token)
        if newer is None:
            raise NotAuthenticated("Server rejected the device token")
        logger.info("Token for device %s rotated during request, retrying", newer.device_id)
        resp = await self._send_authorized(newer, method, path, headers, kwargs)
        if resp.status_code == 401:
            self._drop_rejected(newer)
            raise NotAuthenticated("Server rejected the device token")
        return resp

    async def logout(self) -> None:
        """Drop the credential on the server, then locally."""
        token = self.get_stored_token()
        if token is not None:
            try:
                await self._request(
                    "POST",
                    "/devices/logout",
                    headers={"Authorization": f"Bearer {token.token}"},
                )
            except TransientError as exc:
                logger.warning("Server logout failed (%s), clearing local token anyway", exc)
        self.clear_token()
