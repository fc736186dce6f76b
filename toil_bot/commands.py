from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Literal

import discord
from discord import app_commands

from .errors import TimesheetError
from .models import Break, Session
from .reporter import format_clock
from .til import calculate_session_minutes, format_minutes, local_date_key
from .timeparse import parse_user_time, remaining_cooldown_seconds
from .tracker import utc_now

MANUAL_REPORT_META_KEY = "last_manual_report_at_utc"
SESSION_LIST_DAYS = 7

RoundingChoice = Literal["NONE", "NEAREST_5", "NEAREST_10", "NEAREST_15"]


def format_seconds(total_seconds: int) -> str:
    """Render a duration as HH:MM:SS for cooldown messages."""
    safe_seconds = max(0, int(total_seconds))
    hours, remainder = divmod(safe_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def describe_session(session: Session, tz) -> str:
    day = local_date_key(session.started_at, tz)
    span = f"{format_clock(session.started_at, tz)} - {format_clock(session.ended_at, tz)}"
    line = f"`{session.id}` {day} {span} ({format_minutes(calculate_session_minutes(session))})"
    if session.breaks:
        line += f", {len(session.breaks)} break(s)"
    if session.notes:
        line += f" - {session.notes}"
    return line


def register_commands(bot):
    """Register all slash commands on the bot. Called once during setup."""
    guild_scope = discord.Object(id=bot.config.guild_id)
    service = bot.service
    tz = bot.config.timezone

    async def reply(interaction: discord.Interaction, content: str) -> None:
        await interaction.response.send_message(content, ephemeral=True)

    async def guard(interaction: discord.Interaction) -> bool:
        if interaction.guild is None or interaction.guild.id != bot.config.guild_id:
            await reply(interaction, "This command can only be used in the configured server.")
            return False
        return True

    def when(value: str | None) -> datetime | None:
        if not value:
            return None
        return parse_user_time(value, tz, utc_now())

    @bot.tree.command(name="status", description="Show bot status and cooldown info", guild=guild_scope)
    async def status(interaction: discord.Interaction):
        now = utc_now()
        now_local = now.astimezone(tz)
        next_midnight_local = datetime.combine(now_local.date() + timedelta(days=1), time.min, tzinfo=tz)
        cooldown_remaining = remaining_cooldown_seconds(
            bot.db.get_meta(MANUAL_REPORT_META_KEY), bot.config.report_now_cooldown_seconds, now
        )
        open_session = bot.db.find_open_session()

        lines = [
            "TOIL tracker status: online",
            f"Guild ID: `{bot.config.guild_id}`",
            f"Report channel ID: `{bot.config.report_channel_id}`",
            f"Timezone: `{tz.key}`",
            f"Current local time: `{now_local.isoformat()}`",
            f"Next scheduled daily report: `{next_midnight_local.isoformat()}`",
            f"/report-now cooldown remaining: `{format_seconds(cooldown_remaining)}`",
            f"Open session: {describe_session(open_session, tz) if open_session else 'none'}",
        ]
        await reply(interaction, "\n".join(lines))

    @bot.tree.command(name="clock-in", description="Start a work session", guild=guild_scope)
    @app_commands.describe(
        at="Start time as HH:MM (local) or ISO-8601; defaults to now",
        location="Where you are working",
        notes="Free-form notes",
    )
    async def clock_in(
        interaction: discord.Interaction,
        at: str | None = None,
        location: str | None = None,
        notes: str | None = None,
    ):
        if not await guard(interaction):
            return
        try:
            result = service.clock_in(when(at), location_label=location, notes=notes)
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return

        if result.already_clocked_in:
            await reply(interaction, f"Already clocked in: {describe_session(result.session, tz)}")
            return
        await reply(interaction, f"Clocked in at `{format_clock(result.session.started_at, tz)}`.")

    @bot.tree.command(name="clock-out", description="Close the open work session", guild=guild_scope)
    @app_commands.describe(at="End time as HH:MM (local) or ISO-8601; defaults to now")
    async def clock_out(interaction: discord.Interaction, at: str | None = None):
        if not await guard(interaction):
            return
        try:
            session = service.clock_out(when(at))
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return
        await reply(interaction, f"Clocked out. {describe_session(session, tz)}")

    @bot.tree.command(name="log-session", description="Record a past work session", guild=guild_scope)
    @app_commands.describe(
        start="Start as HH:MM (local, today) or ISO-8601",
        end="End as HH:MM (local, today) or ISO-8601; omit to leave open",
        break_start="Optional break start",
        break_end="Optional break end",
        location="Where you worked",
        notes="Free-form notes",
    )
    async def log_session(
        interaction: discord.Interaction,
        start: str,
        end: str | None = None,
        break_start: str | None = None,
        break_end: str | None = None,
        location: str | None = None,
        notes: str | None = None,
    ):
        if not await guard(interaction):
            return
        try:
            breaks = []
            if break_start or break_end:
                if not (break_start and break_end):
                    await reply(interaction, "Provide both break_start and break_end.")
                    return
                breaks.append(Break(started_at=when(break_start), ended_at=when(break_end)))
            result = service.create_session(
                when(start), when(end), breaks=breaks, location_label=location, notes=notes
            )
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return

        message = f"Logged {describe_session(result.session, tz)}"
        if result.warning:
            message += f"\nWarning: {result.warning} (`{result.overlapping_session_id}`)"
        await reply(interaction, message)

    @bot.tree.command(name="add-break", description="Add a break to a session", guild=guild_scope)
    @app_commands.describe(session_id="Session id from /sessions", start="Break start", end="Break end")
    async def add_break(interaction: discord.Interaction, session_id: str, start: str, end: str):
        if not await guard(interaction):
            return
        try:
            session = service.add_break(session_id.strip(), when(start), when(end))
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return
        await reply(interaction, f"Break added. {describe_session(session, tz)}")

    @bot.tree.command(name="edit-session", description="Change a recorded session", guild=guild_scope)
    @app_commands.describe(
        session_id="Session id from /sessions",
        start="New start time",
        end="New end time",
        notes="Replacement notes",
    )
    async def edit_session(
        interaction: discord.Interaction,
        session_id: str,
        start: str | None = None,
        end: str | None = None,
        notes: str | None = None,
    ):
        if not await guard(interaction):
            return
        changes = {}
        try:
            if start:
                changes["started_at_utc"] = when(start)
            if end:
                changes["ended_at_utc"] = when(end)
            if notes is not None:
                changes["notes"] = notes
            session = service.edit_session(session_id.strip(), **changes)
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return
        await reply(interaction, f"Updated {describe_session(session, tz)}")

    @bot.tree.command(name="delete-session", description="Delete a recorded session", guild=guild_scope)
    @app_commands.describe(session_id="Session id from /sessions")
    async def delete_session(interaction: discord.Interaction, session_id: str):
        if not await guard(interaction):
            return
        try:
            service.delete_session(session_id.strip())
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return
        await reply(interaction, f"Deleted session `{session_id.strip()}`.")

    @bot.tree.command(name="sessions", description="List recorded sessions", guild=guild_scope)
    @app_commands.describe(from_date="YYYY-MM-DD (default: a week ago)", to_date="YYYY-MM-DD (default: today)")
    async def sessions(interaction: discord.Interaction, from_date: str | None = None, to_date: str | None = None):
        if not await guard(interaction):
            return
        try:
            found = service.list_sessions(
                from_date or service.local_day_key(days_back=SESSION_LIST_DAYS - 1),
                to_date,
            )
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return

        if not found:
            await reply(interaction, "No sessions recorded in that range.")
            return

        lines = [describe_session(item, tz) for item in found]
        content = "\n".join(lines)
        if len(content) > 1900:
            content = content[:1900].rsplit("\n", 1)[0] + "\n..."
        await reply(interaction, content)

    @bot.tree.command(name="summary", description="Show worked time and TOIL for a date range", guild=guild_scope)
    @app_commands.describe(from_date="YYYY-MM-DD (default: 13 days before to_date)", to_date="YYYY-MM-DD (default: today)")
    async def summary(interaction: discord.Interaction, from_date: str | None = None, to_date: str | None = None):
        if not await guard(interaction):
            return
        try:
            period = service.summarize(from_date, to_date)
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return

        lines = [f"TOIL summary ({period.from_date} to {period.to_date}):"]
        lines.extend(
            f"- {day.date}: worked `{format_minutes(day.total_minutes)}`, TOIL `{format_minutes(day.til_minutes)}`"
            for day in period.days
        )
        if not period.days:
            lines.append("No tracked activity.")
        lines.append(
            f"Total worked `{format_minutes(period.total_worked_minutes)}`, "
            f"total TOIL `{format_minutes(period.total_til_minutes)}`"
        )
        await reply(interaction, "\n".join(lines))

    @bot.tree.command(name="report-now", description="Post a TOIL report to the report channel", guild=guild_scope)
    @app_commands.describe(from_date="YYYY-MM-DD", to_date="YYYY-MM-DD")
    async def report_now(interaction: discord.Interaction, from_date: str | None = None, to_date: str | None = None):
        if not await guard(interaction):
            return

        now = utc_now()
        cooldown_remaining = remaining_cooldown_seconds(
            bot.db.get_meta(MANUAL_REPORT_META_KEY), bot.config.report_now_cooldown_seconds, now
        )
        if cooldown_remaining > 0:
            await reply(interaction, f"Global cooldown active. Try again in `{format_seconds(cooldown_remaining)}`.")
            return

        if bot.report_channel is None:
            await reply(interaction, "Report channel is not available.")
            return

        try:
            period = service.summarize(from_date, to_date, now_utc=now)
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return

        try:
            await bot.reporter.post_report(bot.report_channel, period, footer=service.get_settings().report_footer)
        except Exception as exc:
            bot.logger.exception("/report-now failed")
            await reply(interaction, f"Failed to send report: `{exc}`")
            return

        bot.db.set_meta(MANUAL_REPORT_META_KEY, now.astimezone(timezone.utc).isoformat())
        await reply(
            interaction,
            f"Posted report for `{period.from_date}` to `{period.to_date}` in <#{bot.config.report_channel_id}>.",
        )

    @bot.tree.command(name="settings", description="Show TOIL settings", guild=guild_scope)
    async def show_settings(interaction: discord.Interaction):
        if not await guard(interaction):
            return
        current = service.get_settings()
        overtime = current.overtime_starts_after_minutes
        lines = [
            f"Standard day: `{format_minutes(current.standard_daily_minutes)}` ({current.standard_daily_minutes} min)",
            f"Rounding: `{current.rounding_rule}`",
            f"Negative TOIL allowed: `{'yes' if current.allow_negative_til else 'no'}`",
            f"Overtime starts after: `{'-' if overtime is None else f'{overtime} min'}`",
            f"Report footer: {current.report_footer or '(none)'}",
        ]
        await reply(interaction, "\n".join(lines))

    @bot.tree.command(name="set-settings", description="Change TOIL settings", guild=guild_scope)
    @app_commands.describe(
        standard_minutes="Standard working minutes per day (1-1440)",
        rounding_rule="Rounding applied to each day's total",
        allow_negative_til="Let short days reduce TOIL",
        overtime_after="Minutes after which overtime starts",
        footer="Text appended to reports",
    )
    async def set_settings(
        interaction: discord.Interaction,
        standard_minutes: int | None = None,
        rounding_rule: RoundingChoice | None = None,
        allow_negative_til: bool | None = None,
        overtime_after: int | None = None,
        footer: str | None = None,
    ):
        if not await guard(interaction):
            return
        changes = {}
        if overtime_after is not None:
            changes["overtime_starts_after_minutes"] = overtime_after
        try:
            updated = service.update_settings(
                standard_daily_minutes=standard_minutes,
                rounding_rule=rounding_rule,
                allow_negative_til=allow_negative_til,
                report_footer=footer,
                **changes,
            )
        except TimesheetError as exc:
            await reply(interaction, str(exc))
            return
        await reply(
            interaction,
            f"Settings saved: standard `{updated.standard_daily_minutes}` min, rounding `{updated.rounding_rule}`, "
            f"negative TOIL `{'on' if updated.allow_negative_til else 'off'}`.",
        )
