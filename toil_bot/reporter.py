from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Protocol
from zoneinfo import ZoneInfo

import discord

from .models import PeriodSummary
from .til import format_minutes

# Discord rejects messages longer than this.
MESSAGE_LIMIT = 2000


class ReportChannelLike(Protocol):
    async def send(self, content: str, **kwargs): ...


def format_clock(instant: datetime | None, tz: ZoneInfo) -> str:
    if instant is None:
        return "ongoing"
    return instant.astimezone(tz).strftime("%H:%M")


class Reporter:
    def __init__(self, tz: ZoneInfo) -> None:
        self.tz = tz

    def build_text_report(self, summary: PeriodSummary, footer: str = "") -> str:
        lines = [
            "TOIL TRACKER REPORT",
            "===================",
            f"Period: {summary.from_date} to {summary.to_date}",
            "",
            "Daily Breakdown:",
            "-----------------",
        ]

        if not summary.days:
            lines.append(f"No tracked activity between {summary.from_date} and {summary.to_date}.")

        for day in summary.days:
            lines.append(
                f"{day.date}  Worked: {format_minutes(day.total_minutes):<6}  TOIL: {format_minutes(day.til_minutes)}"
            )
            for item in day.sessions:
                start = format_clock(item.started_at, self.tz)
                end = format_clock(item.ended_at, self.tz)
                lines.append(f"  {start} - {end}  ({format_minutes(item.minutes)})")

        lines.extend(
            [
                "",
                "Summary:",
                "--------",
                f"Total Worked: {format_minutes(summary.total_worked_minutes)}",
                f"Total TOIL:   {format_minutes(summary.total_til_minutes)}",
            ]
        )

        if footer:
            lines.extend(["", footer])

        return "\n".join(lines)

    def build_csv_report(self, summary: PeriodSummary) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(["TOIL Tracker Report", f"{summary.from_date} to {summary.to_date}"])
        writer.writerow([])
        writer.writerow(
            ["Date", "Session Start", "Session End", "Session Minutes", "Day Total Minutes", "Day TOIL Minutes"]
        )

        for day in summary.days:
            if not day.sessions:
                # Day carries minutes spilled over from a session that started the day before.
                writer.writerow([day.date, "", "", "", day.total_minutes, day.til_minutes])
                continue

            for index, item in enumerate(day.sessions):
                first = index == 0
                writer.writerow(
                    [
                        day.date if first else "",
                        format_clock(item.started_at, self.tz),
                        format_clock(item.ended_at, self.tz),
                        item.minutes,
                        day.total_minutes if first else "",
                        day.til_minutes if first else "",
                    ]
                )

        return buffer.getvalue().rstrip("\n")

    def build_message_content(self, summary: PeriodSummary, footer: str = "") -> str:
        text = self.build_text_report(summary, footer)
        content = f"```\n{text}\n```"
        if len(content) <= MESSAGE_LIMIT:
            return content

        # Fall back to the totals only; the attached CSV carries the breakdown.
        return (
            f"**TOIL report {summary.from_date} to {summary.to_date}**\n"
            f"Total worked: `{format_minutes(summary.total_worked_minutes)}`\n"
            f"Total TOIL: `{format_minutes(summary.total_til_minutes)}`\n"
            "Full breakdown attached."
        )

    async def post_report(
        self,
        channel: ReportChannelLike,
        summary: PeriodSummary,
        *,
        footer: str = "",
    ) -> bool:
        content = self.build_message_content(summary, footer)
        attachment = discord.File(
            io.BytesIO(self.build_csv_report(summary).encode("utf-8")),
            filename=f"toil_{summary.from_date}_{summary.to_date}.csv",
        )

        # Never ping users in automated summaries.
        await channel.send(content, file=attachment, allowed_mentions=discord.AllowedMentions.none())
        return True
