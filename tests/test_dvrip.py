import asyncio
import socket

import dvrip
from dvrip_server import FakeDvripServer


def test_sofia_hash_of_empty_password():
    assert dvrip.sofia_hash("") == "tlJwpbo6"
    assert len(dvrip.sofia_hash("secret")) == 8


def test_pack_and_unpack_header():
    packet = dvrip.pack_packet(dvrip.LOGIN_REQ, {"UserName": "admin"}, session=7, sequence=3)
    header = dvrip.unpack_header(packet)
    assert packet[0] == 0xFF
    assert header == {
        "version": 1,
        "session": 7,
        "sequence": 3,
        "message_id": 1000,
        "length": len(packet) - dvrip.HEADER_SIZE,
    }
    assert packet.endswith(b"\n\x00")
    assert dvrip.decode_payload(packet[dvrip.HEADER_SIZE:]) == {"UserName": "admin"}


def test_unpack_header_rejects_foreign_data():
    assert dvrip.unpack_header(b"RTSP/1.0 200 OK\r\n\r\n\r\n") is None
    assert dvrip.unpack_header(b"\xff\x01") is None


def test_decode_payload_tolerates_garbage():
    assert dvrip.decode_payload(b"") is None
    assert dvrip.decode_payload(b"not json\n\x00") is None
    assert dvrip.decode_payload(b"[1, 2]\n\x00") is None


def test_login_payload_hashes_password():
    payload = dvrip.login_payload("admin", "")
    assert payload["PassWord"] == "tlJwpbo6"
    assert payload["EncryptType"] == "MD5"


def test_probe_dvrip_authenticated():
    async def scenario():
        async with FakeDvripServer() as server:
            result = await dvrip.probe_dvrip("127.0.0.1", server.port, "admin", "", 2)
            return result, server.requests

    result, requests = asyncio.run(scenario())
    assert result == {"available": True, "authenticated": True, "ret": 100}
    header, payload = requests[0]
    assert header["message_id"] == dvrip.LOGIN_REQ
    assert payload["UserName"] == "admin"


def test_probe_dvrip_wrong_password_still_detects_protocol():
    async def scenario():
        async with FakeDvripServer(login_ret=203) as server:
            return await dvrip.probe_dvrip("127.0.0.1", server.port, "admin", "bad", 2)

    result = asyncio.run(scenario())
    assert result["available"] is True
    assert result["authenticated"] is False
    assert result["ret"] == 203


def test_probe_dvrip_closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    result = asyncio.run(dvrip.probe_dvrip("127.0.0.1", port, "admin", "", 1))
    assert result["available"] is False


def test_session_commands_carry_session_id():
    async def scenario():
        async with FakeDvripServer(session=0xABCD) as server:
            async with dvrip.DvripSession("127.0.0.1", server.port, timeout=2) as session:
                await session.login("admin", "")
                ret = await session.command(dvrip.PTZ_REQ, "OPPTZControl", {"Command": "DirectionUp"})
            return ret, server.requests

    ret, requests = asyncio.run(scenario())
    assert ret == 100
    header, payload = requests[1]
    assert header["message_id"] == dvrip.PTZ_REQ
    assert header["session"] == 0xABCD
    assert header["sequence"] == 1
    assert payload["SessionID"] == "0x0000ABCD"
    assert payload["OPPTZControl"] == {"Command": "DirectionUp"}
