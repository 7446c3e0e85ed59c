import asyncio
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import ParseResult, urlparse, urlunparse, unquote

import aiohttp

from errors import MalformedInputError
from param import HTTP_PROBE_TIMEOUT, RTSP_CONNECT_TIMEOUT


HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$")

# Process-wide TLS switch.  Only ever changed by an explicit call.
_ACCEPT_SELF_SIGNED = False


def set_accept_self_signed(value: bool) -> None:
    global _ACCEPT_SELF_SIGNED
    _ACCEPT_SELF_SIGNED = bool(value)
    logging.info("Self-signed TLS certificates %s", "accepted" if _ACCEPT_SELF_SIGNED else "rejected")


def accept_self_signed() -> bool:
    return _ACCEPT_SELF_SIGNED


def mask_credentials(url: Optional[str]) -> Optional[str]:
    """Hide user-info in URLs before they reach a log line."""
    if not url:
        return url
    return re.sub(r"//[^@/]*@", "//<hidden>@", url)


def validate_address(address: Any) -> str:
    """Validate an IP literal or hostname syntactically; no DNS lookup."""
    if not isinstance(address, str) or not address:
        raise MalformedInputError(f"Invalid address: {address!r}")
    candidate = address.strip("[]")
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            socket.inet_pton(family, candidate)
            return candidate
        except OSError:
            continue
    # All-numeric dotted names that failed inet_pton are broken IPv4 literals
    if re.fullmatch(r"[\d.]+", candidate) or not HOSTNAME_RE.fullmatch(candidate):
        raise MalformedInputError(f"Invalid address: {address!r}")
    return candidate


def validate_port(port: Any) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise MalformedInputError(f"Invalid port: {port!r}") from None
    if isinstance(port, bool) or not 1 <= value <= 65535:
        raise MalformedInputError(f"Invalid port: {port!r}")
    return value


def parse_url(url: Any, schemes: Optional[Iterable[str]] = None) -> ParseResult:
    if not isinstance(url, str) or not url:
        raise MalformedInputError(f"Invalid URL: {url!r}")
    try:
        parsed = urlparse(url)
    except ValueError:
        raise MalformedInputError(f"Invalid URL: {mask_credentials(url)}") from None
    scheme = (parsed.scheme or "").lower()
    if not scheme or not parsed.hostname:
        raise MalformedInputError(f"Invalid URL: {mask_credentials(url)}")
    if schemes is not None and scheme not in schemes:
        raise MalformedInputError(f"Unsupported scheme {scheme!r} in {mask_credentials(url)}")
    try:
        port = parsed.port
    except ValueError:
        raise MalformedInputError(f"Invalid port in URL: {mask_credentials(url)}") from None
    validate_address(parsed.hostname)
    if port is not None:
        validate_port(port)
    return parsed


def strip_userinfo(url: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Return the URL without user-info plus the decoded username/password."""
    parsed = urlparse(url)
    if "@" not in parsed.netloc:
        return url, None, None
    userinfo, _, hostport = parsed.netloc.rpartition("@")
    user, _, password = userinfo.partition(":")
    clean = urlunparse(parsed._replace(netloc=hostport))
    return clean, unquote(user) or None, unquote(password) or None


def basic_auth(url: str, credentials: Any = None) -> Tuple[str, Optional[aiohttp.BasicAuth]]:
    clean, user, password = strip_userinfo(url)
    if credentials is not None and getattr(credentials, "username", None):
        user = credentials.username
        password = getattr(credentials, "password", None)
    if not user:
        return clean, None
    return clean, aiohttp.BasicAuth(user, password or "")


def ssl_option(accept_self_signed_tls: Optional[bool] = None):
    """aiohttp ``ssl`` argument: False disables verification, True keeps it."""
    accept = _ACCEPT_SELF_SIGNED if accept_self_signed_tls is None else accept_self_signed_tls
    return False if accept else True


@dataclass
class ProbeResult:
    reachable: bool
    status: Optional[int] = None
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.reachable

    @property
    def unauthorized(self) -> bool:
        return self.status in (401, 403)


async def probe_http(
    url: str,
    credentials: Any = None,
    timeout: float = HTTP_PROBE_TIMEOUT,
    accept_self_signed_tls: Optional[bool] = None,
) -> ProbeResult:
    """HEAD the URL, falling back to a 16 byte ranged GET.

    Network failures are reported as an unreachable result.  Only a
    malformed URL raises.
    """
    parse_url(url, ("http", "https"))
    clean_url, auth = basic_auth(url, credentials)
    ssl = ssl_option(accept_self_signed_tls)
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    status = None
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            try:
                async with session.head(clean_url, auth=auth, ssl=ssl, allow_redirects=True) as resp:
                    status = resp.status
                if 200 <= status < 300:
                    return ProbeResult(True, status)
            except (aiohttp.ClientConnectorError, asyncio.TimeoutError):
                raise
            except aiohttp.ClientError as err:
                # Some firmwares drop the connection on HEAD but serve GET
                logging.debug("HEAD rejected for %s: %s", mask_credentials(url), err)

            async with session.get(
                clean_url,
                auth=auth,
                ssl=ssl,
                headers={"Range": "bytes=0-15"},
            ) as resp:
                status = resp.status
                if status in (200, 206):
                    return ProbeResult(True, status)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as err:
        logging.debug("HTTP probe failed for %s: %s", mask_credentials(url), err)
        return ProbeResult(False, status, str(err) or type(err).__name__)
    logging.debug("HTTP probe for %s returned %s", mask_credentials(url), status)
    return ProbeResult(False, status)


async def fetch_text(
    url: str,
    credentials: Any = None,
    timeout: float = HTTP_PROBE_TIMEOUT,
    accept_self_signed_tls: Optional[bool] = None,
) -> Tuple[Optional[int], Optional[str]]:
    """GET a small text resource (directory listings, CGI replies)."""
    parse_url(url, ("http", "https"))
    clean_url, auth = basic_auth(url, credentials)
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(clean_url, auth=auth, ssl=ssl_option(accept_self_signed_tls)) as resp:
                if resp.status != 200:
                    return resp.status, None
                return resp.status, await resp.text(errors="ignore")
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as err:
        logging.debug("GET failed for %s: %s", mask_credentials(url), err)
        return None, None


async def is_port_open(host: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def probe_rtsp_port(host: str, port: int, timeout: float = RTSP_CONNECT_TIMEOUT) -> bool:
    """Bare TCP connect; many cameras refuse an RTSP handshake from strangers."""
    validate_address(host)
    validate_port(port)
    reachable = await is_port_open(host, port, timeout)
    logging.debug("RTSP port %s:%s %s", host, port, "open" if reachable else "closed")
    return reachable
