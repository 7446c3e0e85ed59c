"""Minimal DVRIP (XMEye/Sofia) client used by discovery and PTZ.

Every packet carries a 20 byte little-endian header::

    B  head (0xFF)   B  version   2x reserved
    I  session id    I  sequence  2x reserved
    H  message id    I  payload length

followed by a JSON payload terminated by ``\\n\\0``.
"""

import asyncio
import hashlib
import json
import logging
import struct
from typing import Any, Dict, Optional, Tuple

HEADER = struct.Struct("<BB2xII2xHI")
HEADER_SIZE = HEADER.size
MAGIC = 0xFF
VERSION = 0x01
PAYLOAD_TAIL = b"\x0a\x00"

LOGIN_REQ = 1000
PTZ_REQ = 1400

RET_OK = 100
RET_UPGRADE_OK = 515
# Returned by firmwares for wrong user or password
RET_AUTH_CODES = (203, 205, 206)

MAX_PAYLOAD = 1 << 20


def sofia_hash(password: str) -> str:
    """Password digest expected by DVRIP logins (MD5 folded to 8 chars)."""
    chars = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
    digest = hashlib.md5((password or "").encode("utf-8")).digest()
    return "".join(chars[(digest[2 * i] + digest[2 * i + 1]) % 62] for i in range(8))


def pack_packet(message_id: int, payload: Any = None, *, session: int = 0, sequence: int = 0) -> bytes:
    if payload is None:
        body = b""
    elif isinstance(payload, (bytes, bytearray)):
        body = bytes(payload)
    else:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8") + PAYLOAD_TAIL
    return HEADER.pack(MAGIC, VERSION, session, sequence, message_id, len(body)) + body


def unpack_header(data: bytes) -> Optional[Dict[str, int]]:
    if len(data) < HEADER_SIZE or data[0] != MAGIC:
        return None
    head, version, session, sequence, message_id, length = HEADER.unpack(data[:HEADER_SIZE])
    return {
        "version": version,
        "session": session,
        "sequence": sequence,
        "message_id": message_id,
        "length": length,
    }


def decode_payload(body: bytes) -> Optional[Dict[str, Any]]:
    text = body.rstrip(b"\x00").rstrip(b"\n").decode("utf-8", errors="ignore")
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def login_payload(username: str, password: str) -> Dict[str, str]:
    return {
        "EncryptType": "MD5",
        "LoginType": "DVRIP-Web",
        "PassWord": sofia_hash(password),
        "UserName": username,
    }


class DvripSession:
    def __init__(self, host: str, port: int, timeout: float = 5):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.session = 0
        self.sequence = 0
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.timeout
        )

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def __aenter__(self) -> "DvripSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def request(self, message_id: int, payload: Any = None) -> Tuple[Dict[str, int], Optional[Dict[str, Any]]]:
        if self._writer is None or self._reader is None:
            raise ConnectionError("DVRIP session is not connected")
        self._writer.write(pack_packet(message_id, payload, session=self.session, sequence=self.sequence))
        await asyncio.wait_for(self._writer.drain(), timeout=self.timeout)
        self.sequence += 1
        raw = await asyncio.wait_for(self._reader.readexactly(HEADER_SIZE), timeout=self.timeout)
        header = unpack_header(raw)
        if header is None:
            raise ValueError("Response is not a DVRIP packet")
        if header["length"] > MAX_PAYLOAD:
            raise ValueError(f"DVRIP payload too large: {header['length']}")
        body = b""
        if header["length"]:
            body = await asyncio.wait_for(self._reader.readexactly(header["length"]), timeout=self.timeout)
        return header, decode_payload(body)

    async def login(self, username: str, password: str) -> Optional[int]:
        header, reply = await self.request(LOGIN_REQ, login_payload(username, password))
        self.session = header["session"]
        if not reply:
            return None
        session_id = reply.get("SessionID")
        if isinstance(session_id, str):
            try:
                self.session = int(session_id, 16)
            except ValueError:
                pass
        ret = reply.get("Ret")
        logging.debug("DVRIP login on %s:%s returned %s", self.host, self.port, ret)
        return ret

    def session_id(self) -> str:
        return "0x%08X" % self.session

    async def command(self, message_id: int, name: str, body: Dict[str, Any]) -> Optional[int]:
        payload = {"Name": name, "SessionID": self.session_id(), name: body}
        _, reply = await self.request(message_id, payload)
        return reply.get("Ret") if reply else None


async def probe_dvrip(host: str, port: int, username: str, password: str, timeout: float) -> Dict[str, Any]:
    """Send a login and report whether a DVRIP server answered.

    A DVRIP header in the reply confirms the protocol even when the
    credentials are rejected.
    """
    result = {"available": False, "authenticated": False, "ret": None}
    session = DvripSession(host, port, timeout=timeout)
    try:
        await session.connect()
        ret = await session.login(username, password)
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, OSError, ValueError) as err:
        logging.debug("DVRIP probe on %s:%s failed: %s", host, port, err)
        return result
    finally:
        await session.close()
    result["available"] = True
    result["ret"] = ret
    result["authenticated"] = ret in (RET_OK, RET_UPGRADE_OK)
    return result
