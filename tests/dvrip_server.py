import asyncio

import dvrip


class FakeDvripServer:
    """Answers DVRIP logins and commands with scripted Ret codes."""

    def __init__(self, login_ret=dvrip.RET_OK, command_ret=dvrip.RET_OK, session=0x1234):
        self.login_ret = login_ret
        self.command_ret = command_ret
        self.session = session
        self.requests = []
        self.server = None
        self.port = None

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader, writer):
        try:
            while True:
                try:
                    raw = await reader.readexactly(dvrip.HEADER_SIZE)
                except asyncio.IncompleteReadError:
                    break
                header = dvrip.unpack_header(raw)
                body = await reader.readexactly(header["length"])
                payload = dvrip.decode_payload(body)
                self.requests.append((header, payload))
                if header["message_id"] == dvrip.LOGIN_REQ:
                    reply = {"Ret": self.login_ret, "SessionID": "0x%08X" % self.session}
                else:
                    reply = {"Ret": self.command_ret, "SessionID": "0x%08X" % self.session}
                writer.write(dvrip.pack_packet(header["message_id"] + 1, reply, session=self.session))
                await writer.drain()
        finally:
            writer.close()
