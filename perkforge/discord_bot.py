from __future__ import annotations

import asyncio
import logging

from perkforge.commands import PREFIX, CommandHandler, describe_outcome, describe_proposal
from perkforge.config import Settings
from perkforge.engine.session import ForgeSession
from perkforge.models.core import ActionResult

log = logging.getLogger(__name__)

try:
    import discord
except Exception:  # pragma: no cover
    discord = None


class ForgeChannelAdapter:
    """Routes chat messages: bot replies are narrator output, `!forge` messages are commands."""

    def __init__(self, session: ForgeSession) -> None:
        self.session = session
        self.commands = CommandHandler(session)

    def handle_command(self, conversation_id: str, text: str, author_id: str = "system") -> ActionResult:
        self.session.switch_conversation(conversation_id)
        return self.commands.handle(text, author_id)

    def handle_ai_message(self, conversation_id: str, text: str, sequence: int) -> str | None:
        self.session.switch_conversation(conversation_id)
        outcome = self.session.on_ai_message(text, sequence)
        message = describe_outcome(outcome)
        if outcome.generation is not None and outcome.generation.ok:
            message = describe_proposal(self.session.roll.session)
        return message


def run_discord_bot(session: ForgeSession, settings: Settings) -> None:
    if discord is None:
        raise RuntimeError("discord.py not installed")
    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN is required to run the Discord bot")

    adapter = ForgeChannelAdapter(session)
    lock = asyncio.Lock()
    intents = discord.Intents.default()
    intents.message_content = True
    client = discord.Client(intents=intents)

    @client.event
    async def on_ready() -> None:
        user_name = str(client.user) if client.user else "unknown"
        log.info("logged_in_as=%s", user_name)

    @client.event
    async def on_message(message) -> None:
        if message.author == client.user:
            return
        channel_name = getattr(message.channel, "name", "")
        if channel_name != settings.forge_channel:
            return
        conversation_id = str(message.channel.id)
        async with lock:
            if message.author.bot:
                reply = await asyncio.to_thread(
                    adapter.handle_ai_message,
                    conversation_id,
                    message.content,
                    message.id,
                )
                if reply:
                    await message.channel.send(reply)
                return
            if not message.content.strip().lower().startswith(PREFIX):
                return
            result = await asyncio.to_thread(
                adapter.handle_command,
                conversation_id,
                message.content,
                str(message.author.id),
            )
        await message.channel.send(result.message[:2000])

    log.info("starting_discord_bot channel=%s", settings.forge_channel)
    client.run(settings.discord_token)
