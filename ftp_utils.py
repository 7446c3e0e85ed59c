import asyncio
import ipaddress
import logging
import os
import posixpath
import re
from typing import Any, List, NamedTuple, Optional, Tuple
from urllib.parse import unquote

from errors import FtpAuthError
from net_utils import mask_credentials, parse_url
from param import (
    FTP_ANONYMOUS_PASSWORD,
    FTP_ANONYMOUS_USER,
    FTP_CONNECT_TIMEOUT,
    FTP_REPLY_TIMEOUT,
    FTP_TRANSFER_TIMEOUT,
)


EPSV_RE = re.compile(r"\(\|\|\|(\d+)\|\)")
PASV_RE = re.compile(r"\((\d+),(\d+),(\d+),(\d+),(\d+),(\d+)\)")
REPLY_RE = re.compile(r"^(\d{3})([ -])(.*)$")

CHUNK_SIZE = 64 * 1024


class FtpError(Exception):
    pass


class FtpReply(NamedTuple):
    code: int
    text: str


def parse_epsv(text: str) -> Optional[int]:
    match = EPSV_RE.search(text or "")
    return int(match.group(1)) if match else None


def parse_pasv(text: str) -> Optional[Tuple[str, int]]:
    match = PASV_RE.search(text or "")
    if not match:
        return None
    parts = [int(value) for value in match.groups()]
    if any(value > 255 for value in parts):
        return None
    host = ".".join(str(value) for value in parts[:4])
    return host, parts[4] * 256 + parts[5]


def is_internal_address(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_link_local or address.is_unspecified


def resolve_data_host(reported: str, control_host: str) -> str:
    """Replace internal PASV addresses with the host of the control link.

    Embedded FTP servers behind NAT routinely advertise their LAN address.
    """
    if is_internal_address(reported) and reported != control_host:
        logging.debug("PASV reported %s, using control host %s", reported, control_host)
        return control_host
    return reported


def login_pair(parsed, credentials: Any = None) -> Tuple[str, str]:
    if credentials is not None and getattr(credentials, "username", None):
        return credentials.username, getattr(credentials, "password", None) or ""
    if parsed.username:
        return unquote(parsed.username), unquote(parsed.password or "")
    return FTP_ANONYMOUS_USER, FTP_ANONYMOUS_PASSWORD


class FtpClient:
    """Just enough of RFC 959 to log in and pull one file or listing."""

    def __init__(
        self,
        host: str,
        port: int = 21,
        *,
        connect_timeout: float = FTP_CONNECT_TIMEOUT,
        reply_timeout: float = FTP_REPLY_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.reply_timeout = reply_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self) -> FtpReply:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
        )
        banner = await self.read_reply(self.connect_timeout)
        if banner.code != 220:
            raise FtpError(f"Unexpected banner: {banner.code} {banner.text}")
        return banner

    async def read_reply(self, timeout: Optional[float] = None) -> FtpReply:
        if self._reader is None:
            raise FtpError("Control connection is closed")
        timeout = timeout or self.reply_timeout
        lines = []
        code = None
        while True:
            raw = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
            if not raw:
                raise FtpError("Control connection closed by server")
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            match = REPLY_RE.match(line)
            if not match:
                continue
            if code is None:
                code = match.group(1)
                if match.group(2) == " ":
                    break
            elif match.group(1) == code and match.group(2) == " ":
                break
        return FtpReply(int(code), "\n".join(lines))

    async def command(self, line: str, timeout: Optional[float] = None) -> FtpReply:
        if self._writer is None:
            raise FtpError("Control connection is closed")
        verb = line.split(" ", 1)[0]
        logging.debug("FTP %s:%s >> %s", self.host, self.port, "PASS ****" if verb == "PASS" else line)
        self._writer.write(line.encode("utf-8") + b"\r\n")
        await asyncio.wait_for(self._writer.drain(), timeout=timeout or self.reply_timeout)
        reply = await self.read_reply(timeout)
        logging.debug("FTP %s:%s << %s", self.host, self.port, reply.text)
        return reply

    async def login(self, username: str, password: str) -> None:
        reply = await self.command(f"USER {username}")
        if reply.code == 331:
            reply = await self.command(f"PASS {password}")
        if reply.code == 530 or reply.code == 332:
            raise FtpAuthError(f"FTP login rejected for {username}", code=reply.code)
        if reply.code not in (230, 202):
            raise FtpError(f"Login failed: {reply.text}")

    async def binary(self) -> None:
        reply = await self.command("TYPE I")
        if reply.code != 200:
            raise FtpError(f"TYPE I refused: {reply.text}")

    async def open_passive(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """EPSV first, PASV as fallback; returns the connected data stream."""
        target = None
        reply = await self.command("EPSV")
        if reply.code == 229:
            port = parse_epsv(reply.text)
            if port:
                target = (self.host, port)
        if target is None:
            reply = await self.command("PASV")
            if reply.code == 227:
                parsed = parse_pasv(reply.text)
                if parsed:
                    target = (resolve_data_host(parsed[0], self.host), parsed[1])
        if target is None:
            raise FtpError("Server refused passive mode")
        logging.debug("FTP data channel %s:%s", *target)
        return await asyncio.wait_for(asyncio.open_connection(*target), timeout=self.connect_timeout)

    async def quit(self) -> None:
        if self._writer is None:
            return
        try:
            await self.command("QUIT", timeout=1)
        except (asyncio.TimeoutError, OSError, FtpError):
            pass

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        await _close_writer(writer)


async def _close_writer(writer: Optional[asyncio.StreamWriter]) -> None:
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def _copy_stream(reader: asyncio.StreamReader, fh) -> int:
    received = 0
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            return received
        fh.write(chunk)
        received += len(chunk)


def _client_for(url: str) -> Tuple[FtpClient, Any]:
    parsed = parse_url(url, ("ftp",))
    return FtpClient(parsed.hostname, parsed.port or 21), parsed


async def ftp_download(
    url: str,
    save_path: str,
    credentials: Any = None,
    *,
    transfer_timeout: float = FTP_TRANSFER_TIMEOUT,
) -> bool:
    """Fetch one file over passive FTP into ``save_path``.

    Success needs data on the wire, a 150/125 before the transfer and a 226
    after it.  The file is written as ``<save_path>.part`` and only moved into
    place on success.  Rejected credentials raise :class:`FtpAuthError`.
    """
    client, parsed = _client_for(url)
    path = unquote(parsed.path) or "/"
    username, password = login_pair(parsed, credentials)
    part_path = f"{save_path}.part"
    data_writer = None
    complete = False
    try:
        await client.connect()
        await client.login(username, password)
        await client.binary()
        data_reader, data_writer = await client.open_passive()
        pre = await client.command(f"RETR {path}")
        if pre.code not in (150, 125):
            logging.debug("RETR %s refused: %s", path, pre.text)
            return False
        os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
        with open(part_path, "wb") as fh:
            received = await asyncio.wait_for(_copy_stream(data_reader, fh), timeout=transfer_timeout)
        await _close_writer(data_writer)
        data_writer = None
        post = await client.read_reply()
        complete = received > 0 and post.code == 226
        logging.info(
            "FTP transfer of %s: %s bytes, reply %s",
            mask_credentials(url),
            received,
            post.code,
        )
        if complete:
            os.replace(part_path, save_path)
            await client.quit()
        return complete
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, FtpError) as err:
        logging.debug("FTP download of %s failed: %s", mask_credentials(url), err)
        return False
    finally:
        await _close_writer(data_writer)
        await client.close()
        if not complete:
            try:
                os.remove(part_path)
            except OSError:
                pass


async def _read_listing(client: FtpClient, verb: str, path: str) -> Optional[bytes]:
    """Run one listing command over a fresh data channel; None when refused."""
    data_writer = None
    try:
        data_reader, data_writer = await client.open_passive()
        pre = await client.command(f"{verb} {path}")
        if pre.code not in (150, 125):
            logging.debug("%s %s refused: %s", verb, path, pre.text)
            return None
        raw = await asyncio.wait_for(data_reader.read(), timeout=FTP_TRANSFER_TIMEOUT)
        await _close_writer(data_writer)
        data_writer = None
        post = await client.read_reply()
        return raw if post.code == 226 else None
    finally:
        await _close_writer(data_writer)


def parse_list_line(line: str) -> Optional[str]:
    """File name from a Unix ``ls -l`` style LIST line; None for directories."""
    fields = line.split(None, 8)
    if len(fields) < 9 or fields[0].startswith(("d", "l")):
        return None
    return fields[8]


async def ftp_list(url: str, credentials: Any = None) -> Optional[List[str]]:
    """Names in an FTP directory via NLST, falling back to LIST.

    Returns None when the directory could not be listed.
    """
    client, parsed = _client_for(url)
    path = unquote(parsed.path) or "/"
    username, password = login_pair(parsed, credentials)
    verb = "NLST"
    try:
        await client.connect()
        await client.login(username, password)
        await client.binary()
        raw = await _read_listing(client, verb, path)
        if raw is None:
            verb = "LIST"
            raw = await _read_listing(client, verb, path)
        if raw is None:
            return None
        await client.quit()
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, FtpError) as err:
        logging.debug("FTP listing of %s failed: %s", mask_credentials(url), err)
        return None
    finally:
        await client.close()
    names = []
    for line in raw.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if verb == "LIST":
            line = parse_list_line(line) or ""
        name = posixpath.basename(line)
        if name:
            names.append(name)
    return names
