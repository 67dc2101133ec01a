# sayso/app.py

import asyncio
import logging

from aiohttp import web

# Import our own modules
from .api import create_app
from .auth import Authenticator, TokenSigner
from .config import Settings, settings as default_settings
from .db_async import Database
from .gateway import RealtimeGateway
from .media import MediaStore
from .oauth import GoogleLogin
from .router import NotificationRouter

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Server:
    """
    The SAYSO backend process.
    Serves the HTTP API and the realtime notification WebSocket from one
    aiohttp application, sharing one database connection and one presence directory.
    """
    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

        # Initialize our core components
        self.db = Database(settings.DATABASE_PATH)
        self.tokens = TokenSigner(settings.SESSION_SECRET, settings.TOKEN_TTL_SECONDS)
        self.authenticator = Authenticator(self.db)
        self.gateway = RealtimeGateway(
            tokens=self.tokens, require_token=settings.REALTIME_REQUIRE_TOKEN,
        )
        self.notifier = NotificationRouter(self.gateway.directory)
        self.media = MediaStore(settings.MEDIA_ROOT, settings.MEDIA_URL_PREFIX)
        self.google = None
        if settings.google_login_enabled:
            self.google = GoogleLogin(
                settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET, settings.GOOGLE_CALLBACK_URL,
            )
        self.web_app = create_app(
            self.db, self.authenticator, self.tokens, self.notifier,
            self.gateway, self.media, frontend_url=settings.FRONTEND_URL, google=self.google,
        )

        self._runner: web.AppRunner | None = None
        logger.info("Server components initialized.")

    async def start(self):
        """
        Connects the database, then starts the HTTP API and its /ws endpoint.
        """
        await self.db.connect()

        self._runner = web.AppRunner(self.web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.HTTP_HOST, self.settings.HTTP_PORT)
        await site.start()
        logger.info(f"HTTP API listening on http://{self.settings.HTTP_HOST}:{self.settings.HTTP_PORT}")

    async def serve_forever(self):
        await self.start()
        await asyncio.Event().wait()

    async def stop(self):
        """
        Gracefully stops the HTTP API, closes live sockets and the database connection.
        """
        logger.info("Shutting down server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        await self.gateway.stop()
        await self.db.close()
        logger.info("Server shut down gracefully.")


async def main():
    configure_logging(default_settings.LOG_LEVEL)
    server = Server()
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received.")


if __name__ == "__main__":
    run()
