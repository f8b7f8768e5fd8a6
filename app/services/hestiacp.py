"""HestiaCP control-panel API: idempotent user, web domain and SSL operations.

Every command is a form POST to ``/api/`` with ``returncode=yes``, so the body
is the HestiaCP return code: ``0`` (or empty) on success, a non-zero code
otherwise. Transport failures are retried with bounded exponential backoff and
surface as PanelUnavailable; command failures surface as PanelCommandError and
are never retried here.
"""

import asyncio
import re
import secrets
import string
from dataclasses import dataclass

import httpx

from app.core.config import get_settings
from app.core.exceptions import PanelAlreadyExists, PanelCommandError, PanelUnavailable
from app.core.logging import get_logger

log = get_logger(__name__)

# HestiaCP return codes
OK = "0"
E_NOTEXIST = "3"
E_EXISTS = "4"
E_SUSPENDED = "5"
E_UNSUSPENDED = "6"

_PASSWORD_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class PanelUser:
    username: str
    password: str
    package: str


@dataclass(frozen=True)
class SslResult:
    ok: bool
    warning: str | None = None


def generate_username(email: str) -> str:
    """First five alphanumerics of the mailbox name plus a random hex suffix."""
    prefix = re.sub(r"[^a-z0-9]", "", email.split("@", 1)[0].lower())[:5]
    if not prefix or not prefix[0].isalpha():
        prefix = ("u" + prefix)[:5]
    return f"{prefix}{secrets.token_hex(3)}"


def generate_password(length: int = 16) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


class HestiaClient:
    def __init__(
        self,
        base_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        server_ip: str | None = None,
        default_package: str | None = None,
        timeout: float | None = None,
        verify_tls: bool | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.hestiacp_url).rstrip("/")
        self.access_key = access_key if access_key is not None else settings.hestiacp_access_key
        self.secret_key = secret_key if secret_key is not None else settings.hestiacp_secret_key
        self.server_ip = server_ip if server_ip is not None else settings.hestiacp_server_ip
        self.default_package = default_package or settings.hestiacp_default_package
        self.timeout = timeout if timeout is not None else settings.hestiacp_timeout_seconds
        self.verify_tls = verify_tls if verify_tls is not None else settings.hestiacp_verify_tls
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.panel_max_attempts)
        self.backoff_base = backoff_base if backoff_base is not None else settings.panel_backoff_base_seconds
        self.backoff_max = backoff_max if backoff_max is not None else settings.panel_backoff_max_seconds
        self._transport = transport

    async def _post(self, data: dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            verify=self.verify_tls,
            transport=self._transport,
        ) as client:
            return await client.post(f"{self.base_url}/api/", data=data)

    async def _call(self, command: str, *args: str | None) -> str:
        """Run a command and return its return code. Arguments are never logged."""
        data = {
            "hash": f"{self.access_key}:{self.secret_key}",
            "returncode": "yes",
            "cmd": command,
        }
        for i, arg in enumerate(args, start=1):
            if arg is not None:
                data[f"arg{i}"] = str(arg)
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self._post(data)
                if resp.status_code < 500:
                    code = resp.text.strip() or OK
                    log.debug("panel_call", command=command, code=code)
                    return code
                last_error = f"HTTP {resp.status_code}"
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.TransportError as e:
                last_error = str(e) or e.__class__.__name__
            if attempt < self.max_attempts:
                delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
                log.warning("panel_call_retry", command=command, attempt=attempt, reason=last_error, delay=delay)
                await asyncio.sleep(delay)
        log.error("panel_unavailable", command=command, attempts=self.max_attempts, reason=last_error)
        raise PanelUnavailable(f"{command} failed after {self.max_attempts} attempts: {last_error}")

    async def _exists(self, command: str, *args: str) -> bool:
        code = await self._call(command, *args)
        if code == OK:
            return True
        if code == E_NOTEXIST:
            return False
        raise PanelCommandError(command, code[:200])

    async def user_exists(self, username: str) -> bool:
        return await self._exists("v-list-user", username)

    async def domain_exists(self, username: str, domain: str) -> bool:
        return await self._exists("v-list-web-domain", username, domain)

    async def create_user(
        self,
        email: str,
        username: str | None = None,
        password: str | None = None,
        package: str | None = None,
    ) -> PanelUser:
        """Create a panel user; raises PanelAlreadyExists when the name is taken."""
        user = PanelUser(
            username=username or generate_username(email),
            password=password or generate_password(),
            package=package or self.default_package,
        )
        if await self.user_exists(user.username):
            raise PanelAlreadyExists("v-add-user", user.username)
        # v-add-user USER PASSWORD EMAIL [PACKAGE]
        code = await self._call("v-add-user", user.username, user.password, email, user.package)
        if code == E_EXISTS:
            raise PanelAlreadyExists("v-add-user", user.username)
        if code != OK:
            raise PanelCommandError("v-add-user", code[:200])
        log.info("panel_user_created", username=user.username, package=user.package)
        return user

    async def create_web_domain(self, username: str, domain: str, ip: str | None = None) -> bool:
        """Attach a web domain. Returns False when it was already attached to this user."""
        if await self.domain_exists(username, domain):
            log.info("panel_domain_exists", username=username, domain=domain)
            return False
        ip = ip or self.server_ip
        # v-add-web-domain USER DOMAIN [IP] [RESTART]
        args = [username, domain] + ([ip, "yes"] if ip else [])
        code = await self._call("v-add-web-domain", *args)
        if code == E_EXISTS:
            raise PanelCommandError("v-add-web-domain", code, f"Domain {domain} belongs to another account")
        if code != OK:
            raise PanelCommandError("v-add-web-domain", code[:200])
        log.info("panel_domain_created", username=username, domain=domain)
        return True

    async def setup_ssl(self, username: str, domain: str) -> SslResult:
        """Issue a Let's Encrypt certificate. Never raises: DNS may not point at the server yet."""
        try:
            code = await self._call("v-add-letsencrypt-domain", username, domain, f"www.{domain}")
        except PanelUnavailable as e:
            code = e.message
        if code == OK:
            return SslResult(ok=True)
        warning = f"SSL setup failed ({code[:200]}); it can be retried once DNS points at the server"
        log.warning("panel_ssl_failed", username=username, domain=domain, code=code[:200])
        return SslResult(ok=False, warning=warning)

    async def delete_user(self, username: str) -> None:
        """Remove the user with all domains and data. A missing user counts as deleted."""
        code = await self._call("v-delete-user", username, "yes")
        if code not in (OK, E_NOTEXIST):
            raise PanelCommandError("v-delete-user", code[:200])
        log.info("panel_user_deleted", username=username, existed=code == OK)

    async def suspend_user(self, username: str) -> None:
        code = await self._call("v-suspend-user", username, "yes")
        if code not in (OK, E_SUSPENDED):
            raise PanelCommandError("v-suspend-user", code[:200])

    async def unsuspend_user(self, username: str) -> None:
        code = await self._call("v-unsuspend-user", username, "yes")
        if code not in (OK, E_UNSUSPENDED):
            raise PanelCommandError("v-unsuspend-user", code[:200])

    def login_url(self, username: str) -> str:
        return f"{self.base_url}/login/?user={username}"


def get_panel_client() -> HestiaClient:
    return HestiaClient()
