"""Telegram provider adapter using python-telegram-bot."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

from loguru import logger
from telegram import ReactionTypeEmoji, ReplyParameters, Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from relaybot.bus.events import InboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import PeerKind, TelegramConfig
from relaybot.providers.base import ProviderAdapter, SendResult

TELEGRAM_MAX_MESSAGE_CHARS = 3800
TELEGRAM_MAX_CAPTION_CHARS = 1024
TELEGRAM_TYPING_INTERVAL_SECONDS = 4.0
# Give up on the typing indicator when no reply is sent within this window
TELEGRAM_TYPING_MAX_SECONDS = 120.0


def _split_message(text: str, max_chars: int = TELEGRAM_MAX_MESSAGE_CHARS) -> list[str]:
    """Split long text into Telegram-safe chunks, preferring paragraph/newline boundaries."""
    if len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_chars:
        split_at = remaining.rfind("\n\n", 0, max_chars)
        if split_at < 0:
            split_at = remaining.rfind("\n", 0, max_chars)
        if split_at < 0:
            split_at = max_chars
        chunk = remaining[:split_at].strip()
        if not chunk:
            chunk = remaining[:max_chars]
            split_at = max_chars
        chunks.append(chunk)
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _markdown_to_telegram_html(text: str) -> str:
    """
    Convert markdown to Telegram-safe HTML.
    """
    if not text:
        return ""

    # Protect fenced and inline code from the other rewrites
    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r'```[\w]*\n?([\s\S]*?)```', save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r'`([^`]+)`', save_inline_code, text)

    # Headers and blockquotes become plain lines
    text = re.sub(r'^#{1,6}\s+(.+)$', r'\1', text, flags=re.MULTILINE)
    text = re.sub(r'^>\s*(.*)$', r'\1', text, flags=re.MULTILINE)

    text = _escape_html(text)

    # Links before bold/italic to handle nested cases
    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2">\1</a>', text)
    text = re.sub(r'\*\*(.+?)\*\*', r'<b>\1</b>', text)
    text = re.sub(r'__(.+?)__', r'<b>\1</b>', text)
    # Avoid matching inside words like some_var_name
    text = re.sub(r'(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])', r'<i>\1</i>', text)
    text = re.sub(r'~~(.+?)~~', r'<s>\1</s>', text)
    text = re.sub(r'^[-*]\s+', '• ', text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_html(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_html(code)}</code></pre>")

    return text


def _peer_kind(chat_type: str | None) -> PeerKind:
    if chat_type == "private":
        return "dm"
    if chat_type == "channel":
        return "channel"
    return "group"


class TelegramAdapter(ProviderAdapter):
    """
    Telegram adapter using long polling.

    Outbound: ``send_message`` plus ``react``, ``edit`` and ``delete``
    actions. Inbound: text messages are published to the bus with the
    routing fields the binding resolver needs (peer kind, forum topic).
    """

    id = "telegram"
    text_chunk_limit = 4000

    def __init__(self, config: TelegramConfig, bus: MessageBus | None = None):
        super().__init__()
        self.config = config
        self.bus = bus
        self._app: Application | None = None
        self._typing_tasks: dict[str, asyncio.Task] = {}  # chat_id -> typing loop task
        self.register_action("react", self._react)
        self.register_action("edit", self._edit)
        self.register_action("delete", self._delete)

    async def start(self) -> None:
        """Start the Telegram bot with long polling."""
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            return

        self._running = True

        # Larger connection pool avoids pool timeouts while long agent runs hold requests
        req = HTTPXRequest(connection_pool_size=16, pool_timeout=5.0, connect_timeout=30.0, read_timeout=30.0)
        builder = Application.builder().token(self.config.token).request(req).get_updates_request(req)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()
        self._app.add_error_handler(self._on_error)
        self._app.add_handler(
            MessageHandler((filters.TEXT | filters.CAPTION) & ~filters.COMMAND, self._on_message)
        )

        logger.info("Starting Telegram bot (polling mode)...")
        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        logger.info(f"Telegram bot @{bot_info.username} connected")

        await self._app.updater.start_polling(
            allowed_updates=["message"],
            drop_pending_updates=True,  # Ignore old messages on startup
        )

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False

        for chat_id in list(self._typing_tasks):
            self._stop_typing(chat_id)

        if self._app:
            logger.info("Stopping Telegram bot...")
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    @staticmethod
    def _get_media_type(path: str) -> str:
        """Guess media type from file extension."""
        ext = path.split("?", 1)[0].rsplit(".", 1)[-1].lower() if "." in path else ""
        if ext in ("jpg", "jpeg", "png", "gif", "webp"):
            return "photo"
        if ext == "ogg":
            return "voice"
        if ext in ("mp3", "m4a", "wav", "aac"):
            return "audio"
        return "document"

    @staticmethod
    def _as_int(value: Any) -> int | None:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def _require_bot(self) -> Any:
        if not self._app:
            raise RuntimeError("Telegram bot not running")
        return self._app.bot

    async def send_message(
        self,
        to: str,
        text: str,
        *,
        media_url: str | None = None,
        account_id: str | None = None,
        reply_to_id: str | None = None,
        thread_id: str | int | None = None,
    ) -> SendResult:
        bot = self._require_bot()
        chat_id = self._as_int(to)
        if chat_id is None:
            raise ValueError(f"Invalid Telegram chat id: {to}")
        self._stop_typing(str(chat_id))

        common: dict[str, Any] = {"chat_id": chat_id, "message_thread_id": self._as_int(thread_id)}
        reply_to = self._as_int(reply_to_id)
        if reply_to is not None:
            common["reply_parameters"] = ReplyParameters(message_id=reply_to)

        last_id: int | None = None
        text = text or ""
        if media_url:
            caption = text if len(text) <= TELEGRAM_MAX_CAPTION_CHARS else ""
            sent = await self._send_media(bot, media_url, caption, common)
            last_id = getattr(sent, "message_id", None)
            text = "" if caption else text

        for chunk in _split_message(text) if text else []:
            try:
                sent = await bot.send_message(text=_markdown_to_telegram_html(chunk), parse_mode="HTML", **common)
            except Exception as e:
                logger.warning(f"HTML parse failed, falling back to plain text: {e}")
                sent = await bot.send_message(text=chunk, **common)
            last_id = getattr(sent, "message_id", None)

        if last_id is None:
            raise ValueError("Nothing to send")
        return SendResult(message_id=str(last_id), extra={"chatId": str(chat_id)})

    async def _send_media(self, bot: Any, media_url: str, caption: str, common: dict[str, Any]) -> Any:
        media_type = self._get_media_type(media_url)
        sender = {
            "photo": bot.send_photo,
            "voice": bot.send_voice,
            "audio": bot.send_audio,
        }.get(media_type, bot.send_document)
        extra: dict[str, Any] = dict(common)
        if caption:
            extra["caption"] = _markdown_to_telegram_html(caption)
            extra["parse_mode"] = "HTML"
        local = Path(media_url).expanduser()
        if "://" not in media_url and local.is_file():
            with open(local, "rb") as f:
                return await sender(**{media_type: f}, **extra)
        return await sender(**{media_type: media_url}, **extra)

    async def _react(self, params: dict[str, Any]) -> bool:
        bot = self._require_bot()
        emoji = str(params.get("emoji") or "").strip()
        reaction = [ReactionTypeEmoji(emoji=emoji)] if emoji else []
        await bot.set_message_reaction(
            chat_id=self._as_int(params.get("chatId")),
            message_id=self._as_int(params.get("messageId")),
            reaction=reaction,
        )
        return True

    async def _edit(self, params: dict[str, Any]) -> bool:
        bot = self._require_bot()
        await bot.edit_message_text(
            chat_id=self._as_int(params.get("chatId")),
            message_id=self._as_int(params.get("messageId")),
            text=_markdown_to_telegram_html(str(params.get("text") or "")),
            parse_mode="HTML",
        )
        return True

    async def _delete(self, params: dict[str, Any]) -> bool:
        bot = self._require_bot()
        return bool(await bot.delete_message(
            chat_id=self._as_int(params.get("chatId")),
            message_id=self._as_int(params.get("messageId")),
        ))

    @staticmethod
    def _sender_id(user) -> str:
        """Build sender_id with username for allowlist matching."""
        sid = str(user.id)
        return f"{sid}|{user.username}" if user.username else sid

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Publish an incoming text message to the bus."""
        if not update.message or not update.effective_user or self.bus is None:
            return

        message = update.message
        chat_id = str(message.chat_id)
        content = "\n".join(part for part in (message.text, message.caption) if part) or "[empty message]"
        kind = _peer_kind(getattr(message.chat, "type", None))
        thread_id = message.message_thread_id
        is_forum_topic = kind == "group" and bool(getattr(message.chat, "is_forum", False)) and thread_id

        logger.debug(f"Telegram message from {chat_id}: {content[:50]}...")
        self._start_typing(chat_id)

        await self.bus.publish_inbound(InboundMessage(
            channel=self.id,
            sender_id=self._sender_id(update.effective_user),
            chat_id=chat_id,
            content=content,
            peer_kind=kind,
            peer_id=f"{chat_id}:topic:{thread_id}" if is_forum_topic else chat_id,
            thread_id=thread_id,
            message_id=str(message.message_id),
            metadata={
                "username": update.effective_user.username,
                "first_name": update.effective_user.first_name,
                "is_group": kind != "dm",
            },
        ))

    def _start_typing(self, chat_id: str) -> None:
        self._stop_typing(chat_id)
        self._typing_tasks[chat_id] = asyncio.create_task(self._typing_loop(chat_id))

    def _stop_typing(self, chat_id: str) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task and not task.done():
            task.cancel()

    async def _typing_loop(self, chat_id: str) -> None:
        """Repeatedly send 'typing' action until cancelled or the time limit runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + TELEGRAM_TYPING_MAX_SECONDS
        try:
            while self._app and loop.time() < deadline:
                await self._app.bot.send_chat_action(chat_id=int(chat_id), action="typing")
                await asyncio.sleep(TELEGRAM_TYPING_INTERVAL_SECONDS)
            if self._app:
                logger.debug(f"Typing indicator for {chat_id} timed out")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Typing indicator stopped for {chat_id}: {e}")
        finally:
            if self._typing_tasks.get(chat_id) is asyncio.current_task():
                self._typing_tasks.pop(chat_id, None)

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Log polling / handler errors instead of silently swallowing them."""
        logger.error(f"Telegram error: {context.error}")
