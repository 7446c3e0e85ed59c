import contextlib

from aiohttp import web


@contextlib.asynccontextmanager
async def serve(app):
    """Run an aiohttp application on an ephemeral 127.0.0.1 port."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    try:
        yield runner.addresses[0][1]
    finally:
        await runner.cleanup()
