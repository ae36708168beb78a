from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from crowdtune.events import PlaybackEvent
from crowdtune.operations import Failure
from crowdtune.song_queue import SEED_USER, SongView
from crowdtune.spotify_client import RemoteTrack

if TYPE_CHECKING:
    from crowdtune.context import SyncContext

log = logging.getLogger(__name__)

QUEUE_TITLE = "🎵 Priority Queue"
VOTE_EMOJIS = ["1️⃣", "2️⃣", "3️⃣", "4️⃣", "5️⃣", "6️⃣", "7️⃣", "8️⃣", "9️⃣", "🔟"]
SPOTIFY_GREEN = discord.Color.from_rgb(30, 215, 96)


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    if seconds <= 0:
        return "?:??"
    m, s = divmod(seconds, 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def _added_by(song: SongView) -> str:
    if song.added_by == SEED_USER:
        return "playlist"
    return f"<@{song.added_by}>"


def build_queue_embed(songs: list[SongView]) -> discord.Embed:
    if not songs:
        description = "The queue is empty! Add songs with /addsong"
    else:
        lines = []
        for emoji, song in zip(VOTE_EMOJIS, songs):
            votes = "1 vote" if song.votes == 1 else f"{song.votes} votes"
            playing = " ▶️" if song.playing else ""
            lines.append(f'{emoji} "{song.title}" ({votes} - added by {_added_by(song)}){playing}')
        if len(songs) > len(VOTE_EMOJIS):
            lines.append(f"…and {len(songs) - len(VOTE_EMOJIS)} more")
        description = "\n".join(lines)
    embed = discord.Embed(
        title=QUEUE_TITLE,
        description=description,
        color=discord.Color.blue(),
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text="React with emojis to vote for songs!")
    return embed


class SearchView(discord.ui.View):
    """Numbered buttons for /addsong results. Only the requester may pick."""

    def __init__(
        self, cog: QueueCog, interaction: discord.Interaction, results: list[RemoteTrack]
    ) -> None:
        super().__init__(timeout=30)
        self.cog = cog
        self.original_interaction = interaction
        self.requester_id = interaction.user.id
        self.chosen = False

        for i, track in enumerate(results):
            button = discord.ui.Button(label=str(i + 1), style=discord.ButtonStyle.primary)
            button.callback = self._make_callback(track)
            self.add_item(button)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.requester_id:
            await interaction.response.send_message(
                "Only the person who searched can pick a song.", ephemeral=True
            )
            return False
        return True

    def _make_callback(self, track: RemoteTrack):
        async def callback(interaction: discord.Interaction) -> None:
            if self.chosen:
                await interaction.response.defer()
                return
            self.chosen = True
            self._disable_all()
            await interaction.response.edit_message(view=self)

            result = await self.cog.coordinator.add_song(
                track.title, track.id, str(interaction.user.id), priority=True
            )
            if not result.success:
                await interaction.followup.send(f"❌ Failed to add: {result.error}")
                return
            lines = [f"✅ Added **{result.title}** at position {result.position}."]
            if result.archive_name:
                lines.append(
                    f"Added to playlists: Archive ({result.archive_name}) "
                    f"and Active ({result.active_name})"
                )
            await interaction.followup.send("\n".join(lines))
            self.stop()

        return callback

    def _disable_all(self) -> None:
        for item in self.children:
            item.disabled = True  # type: ignore[union-attr]

    async def on_timeout(self) -> None:
        self._disable_all()
        try:
            await self.original_interaction.edit_original_response(view=self)
        except discord.HTTPException:
            pass


class QueueDisplay:
    """The single queue message in the queue channel, with vote reactions."""

    def __init__(self, cog: QueueCog) -> None:
        self.cog = cog
        self.channel: discord.TextChannel | None = None
        self.message: discord.Message | None = None
        self._lock = asyncio.Lock()

    async def initialize(self, channel: discord.TextChannel) -> None:
        self.channel = channel
        async with self._lock:
            try:
                async for old in channel.history(limit=50):
                    if (
                        old.author == self.cog.bot.user
                        and old.embeds
                        and old.embeds[0].title == QUEUE_TITLE
                    ):
                        await old.delete()
            except discord.HTTPException as exc:
                log.warning("Failed to clean up old queue messages: %s", exc)
            await self._post()

    async def _post(self) -> None:
        if self.channel is None:
            return
        songs = self.cog.coordinator.get_queue()
        try:
            self.message = await self.channel.send(embed=build_queue_embed(songs))
        except discord.HTTPException as exc:
            log.error("Failed to post the queue message: %s", exc)
            self.message = None
            return
        await self._sync_reactions(len(songs))

    async def refresh(self) -> None:
        if self.channel is None:
            return
        async with self._lock:
            if self.message is None:
                await self._post()
                return
            songs = self.cog.coordinator.get_queue()
            try:
                await self.message.edit(embed=build_queue_embed(songs))
            except discord.NotFound:
                log.info("Queue message was deleted, posting a new one")
                await self._post()
                return
            except discord.HTTPException as exc:
                log.warning("Failed to update the queue message: %s", exc)
                return
            await self._sync_reactions(len(songs))

    async def _sync_reactions(self, count: int) -> None:
        if self.message is None:
            return
        wanted = VOTE_EMOJIS[:count]
        try:
            message = await self.message.channel.fetch_message(self.message.id)
            present = {str(r.emoji) for r in message.reactions if r.me}
            for emoji in wanted:
                if emoji not in present:
                    await message.add_reaction(emoji)
            for reaction in message.reactions:
                if str(reaction.emoji) not in wanted:
                    await reaction.clear()
            self.message = message
        except discord.HTTPException as exc:
            log.warning("Failed to update queue reactions: %s", exc)


class QueueCog(commands.Cog):
    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.ctx: SyncContext = bot.ctx  # type: ignore[attr-defined]
        self.coordinator = self.ctx.coordinator
        self.display = QueueDisplay(self)
        self._subscriptions = [
            (PlaybackEvent.QUEUE_CHANGED, self._on_queue_changed),
            (PlaybackEvent.TRACK_TRANSITIONED, self._on_track_transitioned),
            (PlaybackEvent.NOW_PLAYING, self._on_now_playing),
            (PlaybackEvent.PLAYBACK_STOPPED, self._on_playback_stopped),
        ]

    async def cog_load(self) -> None:
        for event, handler in self._subscriptions:
            self.ctx.events.subscribe(event, handler)

    async def cog_unload(self) -> None:
        for event, handler in self._subscriptions:
            self.ctx.events.unsubscribe(event, handler)

    # ── event handlers ───────────────────────────────────────────────────

    async def _on_queue_changed(self, songs: list[SongView]) -> None:
        await self.display.refresh()

    async def _on_track_transitioned(self, previous, current) -> None:
        await self.display.refresh()

    async def _on_now_playing(self, current) -> None:
        activity = discord.Activity(type=discord.ActivityType.listening, name=current.title)
        try:
            await self.bot.change_presence(activity=activity)
        except discord.HTTPException:
            pass
        await self.display.refresh()

    async def _on_playback_stopped(self) -> None:
        try:
            await self.bot.change_presence(activity=None)
        except discord.HTTPException:
            pass
        await self.display.refresh()

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        name = self.ctx.settings.queue_channel
        for guild in self.bot.guilds:
            channel = discord.utils.get(guild.text_channels, name=name)
            if channel is not None:
                log.info("Using #%s in %s for the queue display", name, guild.name)
                await self.display.initialize(channel)
                return
        log.warning("No #%s channel found, queue display disabled", name)

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        message = self.display.message
        if message is None or payload.message_id != message.id:
            return
        if self.bot.user and payload.user_id == self.bot.user.id:
            return
        emoji = str(payload.emoji)
        if emoji not in VOTE_EMOJIS:
            return
        ok = await self.coordinator.vote(VOTE_EMOJIS.index(emoji), str(payload.user_id))
        if not ok:
            try:
                await message.remove_reaction(payload.emoji, discord.Object(id=payload.user_id))
            except discord.HTTPException:
                pass

    # ── commands ─────────────────────────────────────────────────────────

    @app_commands.command(name="addsong", description="Search Spotify and add a song to the priority queue")
    @app_commands.describe(title="The title of the song")
    async def addsong(self, interaction: discord.Interaction, title: str) -> None:
        await interaction.response.defer()
        log.info("Searching for %r for user %s", title, interaction.user.id)
        results = await self.coordinator.search(title, limit=5)
        if isinstance(results, Failure):
            await interaction.followup.send("❌ Failed to search for songs. Please try again later.")
            return
        if not results:
            await interaction.followup.send("❌ No songs found matching your search.")
            return

        lines = [
            f"**{i + 1}.** {t.name} by {t.artists[0] if t.artists else 'Unknown'}"
            f" ({t.album}) [{format_duration(t.duration_ms)}]"
            for i, t in enumerate(results)
        ]
        embed = discord.Embed(
            title=f"🟢 Spotify: {title}",
            description="\n".join(lines),
            color=SPOTIFY_GREEN,
        )
        embed.set_footer(text="Click a number to select your song")
        await interaction.followup.send(embed=embed, view=SearchView(self, interaction, results))

    @app_commands.command(name="vote", description="Vote for a song in the queue")
    @app_commands.describe(position="Position in the queue (1-indexed)")
    async def vote(self, interaction: discord.Interaction, position: int) -> None:
        songs = self.coordinator.get_queue()
        if not 1 <= position <= len(songs):
            await interaction.response.send_message(
                f"❌ Invalid position. The queue has {len(songs)} songs.", ephemeral=True
            )
            return
        song = songs[position - 1]
        if await self.coordinator.vote(position - 1, str(interaction.user.id)):
            await interaction.response.send_message(f"🗳️ Voted for **{song.title}**.")
        else:
            await interaction.response.send_message(
                "❌ You have already voted for that song.", ephemeral=True
            )

    @app_commands.command(name="queue", description="Show the priority queue")
    async def queue(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(
            embed=build_queue_embed(self.coordinator.get_queue()), ephemeral=True
        )

    @app_commands.command(name="skip", description="Skip the current song (and more if you like)")
    @app_commands.describe(count="How many songs to skip (1-5)")
    async def skip(
        self, interaction: discord.Interaction, count: app_commands.Range[int, 1, 5] = 1
    ) -> None:
        await interaction.response.defer()
        skipped = await self.coordinator.skip(count)
        if not skipped:
            await interaction.followup.send("❌ Nothing to skip.")
            return
        titles = "\n".join(f"• {t}" for t in skipped)
        await interaction.followup.send(f"⏭️ Skipped {len(skipped)} song(s):\n{titles}")

    @app_commands.command(name="listsongs", description="List the next songs in the Spotify playlists")
    async def listsongs(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        tracks = await self.ctx.playlists.get_playlist_tracks(force=True)
        if tracks is None:
            await interaction.followup.send(
                "❌ Could not reach Spotify. Try again in a moment.", ephemeral=True
            )
            return
        upcoming = [(t, "active") for t in tracks.active] + [(t, "overflow") for t in tracks.overflow]
        if not upcoming:
            await interaction.followup.send("Both playlists are empty.", ephemeral=True)
            return
        lines = [
            f"`{i + 1}.` {t.title} [{format_duration(t.duration_ms)}] · {source}"
            for i, (t, source) in enumerate(upcoming[:5])
        ]
        embed = discord.Embed(
            title="🎶 Up next on Spotify",
            description="\n".join(lines),
            color=SPOTIFY_GREEN,
        )
        await interaction.followup.send(embed=embed, ephemeral=True)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(QueueCog(bot))
