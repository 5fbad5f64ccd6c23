from typing import Optional, Protocol

import aiohttp
import discord
from loguru import logger

from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import Course

COLOR_INFO = 0x5865F2  # Blurple
COLOR_SUCCESS = 0x57F287  # Green
COLOR_WARNING = 0xFEE75C  # Yellow
COLOR_ERROR = 0xED4245  # Red


class NotificationSink(Protocol):
    """Receives the events of a sync sweep. Implementations may raise; callers isolate them."""

    async def notify_new_content(self, account_id: str, course: Course, item: ContentItem): ...

    async def notify_check_in_success(
        self, account_id: str, course: Course, item: ContentItem, timestamp: Optional[str]
    ): ...

    async def notify_check_in_unverified(
        self, account_id: str, course: Course, item: ContentItem
    ): ...

    async def notify_sweep_summary(self, account_id: str, new_count: int, confirmed_count: int): ...

    async def notify_error(self, account_id: str, message: str): ...

    async def notify_registered(self, account_id: str, login_id: str, course_count: int): ...


def _attendance_type(item: ContentItem) -> str:
    return "Manual (Oleh Dosen)" if item.is_manual else "Mandiri (Auto)"


def _new_content_footer(item: ContentItem) -> str:
    if item.is_manual:
        return "Absensi manual oleh dosen, tidak bisa auto-absen"
    if not item.is_active:
        return "Waktu kehadiran sudah berakhir"
    return "Sistem akan mencoba absen otomatis..."


class DiscordNotifier:
    """Sends sweep events to a Discord webhook as embeds, mentioning the account's user."""

    def __init__(self, webhook_url: str, username: str = "Presensi SIMA"):
        self.webhook_url = webhook_url
        self.username = username

    async def _send(self, account_id: str, embed: discord.Embed):
        async with aiohttp.ClientSession() as session:
            webhook = discord.Webhook.from_url(self.webhook_url, session=session)
            try:
                await webhook.send(
                    content=f"<@{account_id}>",
                    embeds=[embed],
                    username=self.username,
                    wait=True,
                )
                logger.info(f"Sent '{embed.title}' to webhook for {account_id}.")
            except discord.HTTPException as e:
                logger.error(f"Error sending to webhook: {e}")

    async def notify_new_content(self, account_id: str, course: Course, item: ContentItem):
        embed = discord.Embed(
            title="Materi Baru Terdeteksi!",
            description=f"Materi baru telah ditambahkan pada mata kuliah **{course.name}**",
            color=COLOR_INFO,
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(name="Mata Kuliah", value=course.name or "-", inline=False)
        embed.add_field(name="Judul Materi", value=item.title, inline=False)
        embed.add_field(name="Bahasan", value=item.topic or "-", inline=False)
        embed.add_field(name="Waktu Kehadiran", value=item.attendance_window or "-", inline=True)
        embed.add_field(name="Waktu Diskusi", value=item.discussion_window or "-", inline=True)
        embed.add_field(name="Tipe Absensi", value=_attendance_type(item), inline=False)
        embed.set_footer(text=_new_content_footer(item))
        await self._send(account_id, embed)

    async def notify_check_in_success(
        self, account_id: str, course: Course, item: ContentItem, timestamp: Optional[str]
    ):
        embed = discord.Embed(
            title="Absen Berhasil!",
            description=f"Berhasil absen pada materi **{item.title}**",
            color=COLOR_SUCCESS,
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(name="Mata Kuliah", value=course.name or "-", inline=False)
        embed.add_field(name="Materi", value=item.title, inline=False)
        embed.add_field(name="Waktu Absen", value=timestamp or "Baru saja", inline=True)
        embed.add_field(name="Status", value="Hadir", inline=True)
        await self._send(account_id, embed)

    async def notify_check_in_unverified(
        self, account_id: str, course: Course, item: ContentItem
    ):
        embed = discord.Embed(
            title="Absen Belum Terverifikasi",
            description=(
                f"Permintaan absen untuk **{item.title}** sudah dikirim, "
                "tetapi namamu belum muncul di daftar hadir."
            ),
            color=COLOR_WARNING,
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(name="Mata Kuliah", value=course.name or "-", inline=False)
        embed.add_field(name="Materi", value=item.title, inline=False)
        embed.set_footer(text="Silakan cek daftar hadir secara manual di SIMA")
        await self._send(account_id, embed)

    async def notify_sweep_summary(self, account_id: str, new_count: int, confirmed_count: int):
        embed = discord.Embed(
            title="Ringkasan Pengecekan",
            description="Pengecekan otomatis selesai dilakukan.",
            color=COLOR_INFO,
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(name="Materi Baru", value=f"{new_count} materi", inline=True)
        embed.add_field(name="Absen Berhasil", value=f"{confirmed_count} absensi", inline=True)
        await self._send(account_id, embed)

    async def notify_error(self, account_id: str, message: str):
        embed = discord.Embed(
            title="Terjadi Kesalahan",
            description=(
                f"Sistem mengalami kesalahan saat memproses data Anda:\n\n```{message}```"
            ),
            color=COLOR_ERROR,
            timestamp=discord.utils.utcnow(),
        )
        embed.set_footer(text="Sistem akan mencoba lagi pada pengecekan berikutnya")
        await self._send(account_id, embed)

    async def notify_registered(self, account_id: str, login_id: str, course_count: int):
        embed = discord.Embed(
            title="Registrasi Berhasil!",
            description="Akun SIMA Anda telah berhasil didaftarkan dalam sistem absensi otomatis!",
            color=COLOR_SUCCESS,
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(name="NIM", value=login_id, inline=True)
        embed.add_field(name="Mata Kuliah", value=f"{course_count} terdaftar", inline=True)
        embed.add_field(name="Status", value="Aktif", inline=True)
        await self._send(account_id, embed)


class LogNotifier:
    """Writes sweep events to the log. Used when no webhook is configured."""

    async def notify_new_content(self, account_id: str, course: Course, item: ContentItem):
        logger.info(
            f"[{account_id}] New materi in {course.name}: {item.title} ({_attendance_type(item)})"
        )

    async def notify_check_in_success(
        self, account_id: str, course: Course, item: ContentItem, timestamp: Optional[str]
    ):
        logger.success(f"[{account_id}] Absen berhasil: {item.title} at {timestamp or 'unknown'}")

    async def notify_check_in_unverified(
        self, account_id: str, course: Course, item: ContentItem
    ):
        logger.warning(f"[{account_id}] Absen not verified: {item.title}")

    async def notify_sweep_summary(self, account_id: str, new_count: int, confirmed_count: int):
        logger.info(f"[{account_id}] Summary: {new_count} new, {confirmed_count} confirmed")

    async def notify_error(self, account_id: str, message: str):
        logger.error(f"[{account_id}] {message}")

    async def notify_registered(self, account_id: str, login_id: str, course_count: int):
        logger.success(f"[{account_id}] Registered NIM {login_id} with {course_count} courses")


def create_notifier(webhook_url: Optional[str]) -> NotificationSink:
    if webhook_url:
        return DiscordNotifier(webhook_url)
    logger.warning("No Discord webhook configured. Notifications go to the log only.")
    return LogNotifier()
