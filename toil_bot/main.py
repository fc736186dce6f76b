from __future__ import annotations

import logging

import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv

from .commands import register_commands
from .config import Config, load_config
from .db import Database
from .reporter import Reporter
from .tracker import TimesheetService, utc_now

AUTO_REPORT_META_KEY = "last_auto_report_day"


class TOILTrackerBot(commands.Bot):
    def __init__(self, config: Config, db: Database) -> None:
        intents = discord.Intents.none()
        intents.guilds = True

        super().__init__(command_prefix="!", intents=intents)

        self.config = config
        self.db = db
        self.service = TimesheetService(db=db, tz=config.timezone)
        self.reporter = Reporter(config.timezone)

        self.logger = logging.getLogger("toil-tracker-bot")

        # runtime_ready prevents the report loop from running before channel/permission checks pass.
        self.runtime_ready = False
        self.report_channel: discord.TextChannel | None = None

    async def setup_hook(self) -> None:
        # Register slash commands during startup and begin the daily report loop.
        register_commands(self)
        await self.tree.sync(guild=discord.Object(id=self.config.guild_id))
        self.daily_report_loop.start()

    async def on_ready(self) -> None:
        self.logger.info("Connected as %s (%s)", self.user, self.user.id if self.user else "unknown")
        if self.runtime_ready:
            return

        if await self._validate_runtime_resources():
            self.runtime_ready = True
            self.logger.info("Runtime checks passed")

    async def _validate_runtime_resources(self) -> bool:
        # Fail fast if guild/channel/permissions are misconfigured.
        guild = self.get_guild(self.config.guild_id)
        if guild is None:
            self.logger.error("Configured guild %s not found", self.config.guild_id)
            await self.close()
            return False

        report = guild.get_channel(self.config.report_channel_id)
        if not isinstance(report, discord.TextChannel):
            self.logger.error("Report channel %s is missing or not a text channel", self.config.report_channel_id)
            await self.close()
            return False

        me = guild.me
        if me is None and self.user is not None:
            me = guild.get_member(self.user.id)

        if me is None:
            self.logger.error("Unable to resolve bot member in guild %s", guild.id)
            await self.close()
            return False

        perms = report.permissions_for(me)
        if not perms.view_channel or not perms.send_messages or not perms.attach_files:
            self.logger.error("Missing view/send/attach permission in report channel %s", report.id)
            await self.close()
            return False

        self.report_channel = report
        return True

    @tasks.loop(seconds=30)
    async def daily_report_loop(self) -> None:
        if not self.runtime_ready:
            return

        now = utc_now()
        now_local = now.astimezone(self.config.timezone)

        # The loop runs every 30s; only execute report logic during 00:00 local minute.
        if now_local.hour != 0 or now_local.minute != 0:
            return

        target_day = self.service.local_day_key(now, days_back=1)
        # Guard against duplicate posts during the same 00:00 minute window.
        if self.db.get_meta(AUTO_REPORT_META_KEY) == target_day:
            return

        if self.report_channel is None:
            self.logger.error("Report channel unavailable while trying to post daily report")
            return

        self.logger.info("Posting daily TOIL report for %s", target_day)

        try:
            summary = self.service.summarize(target_day, target_day, now_utc=now)
            await self.reporter.post_report(
                self.report_channel,
                summary,
                footer=self.service.get_settings().report_footer,
            )
        except Exception:  # pragma: no cover - runtime safety
            self.logger.exception("Failed to post daily report")
            return

        self.db.set_meta(AUTO_REPORT_META_KEY, target_day)

    @daily_report_loop.before_loop
    async def before_daily_report_loop(self) -> None:
        await self.wait_until_ready()

    async def close(self) -> None:
        if self.daily_report_loop.is_running():
            self.daily_report_loop.cancel()
        self.db.close()
        await super().close()


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main() -> None:
    load_dotenv()
    configure_logging()

    config = load_config()
    db = Database(config.database_path)
    db.initialize()

    bot = TOILTrackerBot(config=config, db=db)
    bot.run(config.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
