import logging

import discord
from discord.ext import commands

from crowdtune.config import Settings
from crowdtune.context import SyncContext

log = logging.getLogger("crowdtune")


class Crowdtune(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        super().__init__(command_prefix="!", intents=intents)
        self.settings = settings
        self.ctx = SyncContext.from_settings(settings)
        self._web_runner = None

    async def setup_hook(self) -> None:
        await self.load_extension("cogs.queue_cog")
        await self.tree.sync()
        log.info("Command tree synced.")

        try:
            from crowdtune.metrics import start_metrics_server
            start_metrics_server(self.settings.metrics_port)
            log.info("Prometheus metrics server started on :%s", self.settings.metrics_port)
        except OSError as exc:
            log.warning("Failed to start metrics server: %s", exc)

        if self.settings.web_port:
            try:
                from web.app import start_web_server
                self._web_runner = await start_web_server(self.ctx, self.settings.web_port)
                log.info("Web dashboard started on :%s", self.settings.web_port)
            except OSError as exc:
                log.warning("Failed to start web dashboard: %s", exc)

        await self.ctx.start()

    async def on_ready(self) -> None:
        log.info("Logged in as %s (ID: %s) in %d guilds",
                 self.user, self.user.id, len(self.guilds))

    async def close(self) -> None:
        await self.ctx.close()
        if self._web_runner is not None:
            await self._web_runner.cleanup()
        await super().close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = Settings.from_env()
    if not settings.discord_token:
        raise SystemExit("DISCORD_TOKEN not set in .env")
    if not settings.spotify_client_id or not settings.spotify_client_secret:
        raise SystemExit("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set in .env")

    bot = Crowdtune(settings)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
