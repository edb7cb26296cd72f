import html
import logging

import httpx

from livechat.core.config import settings
from livechat.core.constants import TELEGRAM_API_URL, TELEGRAM_TIMEOUT
from livechat.core.exceptions import TelegramSendError
from livechat.models.chat import ChatMessage, ChatSession

logger = logging.getLogger('livechat')


def telegram_configured() -> bool:
    return bool(settings.telegram_bot_token and settings.telegram_chat_id)


async def send_telegram_message(text: str) -> dict:
    """Отправить сообщение операторам в Telegram, вернуть ответ API"""
    if not telegram_configured():
        raise TelegramSendError('Telegram token/chat_id not configured')

    url = TELEGRAM_API_URL.format(token=settings.telegram_bot_token)
    payload = {
        'chat_id': settings.telegram_chat_id,
        'text': text,
        'parse_mode': 'HTML',
        'disable_web_page_preview': True,
    }

    async with httpx.AsyncClient(timeout=TELEGRAM_TIMEOUT) as client:
        try:
            r = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TelegramSendError(f'Telegram request failed: {e}') from e
        if r.status_code != 200:
            raise TelegramSendError(
                f'Telegram API error: {r.status_code} {r.text}'
            )
        return r.json()


def format_new_chat_text(chat: ChatSession, message: ChatMessage) -> str:
    name = html.escape(chat.visitor_name or 'Visitor')
    email = html.escape(chat.visitor_email or 'n/a')
    return (
        f'<b>💬 New live chat message</b>\n'
        f'🆔 Session: <code>{chat.id}</code>\n'
        f'👤 {name}\n'
        f'📧 {email}\n\n'
        f'<b>Message:</b>\n{html.escape(message.message)}\n\n'
        f'<i>Reply from the admin chat panel.</i>'
    )


async def notify_new_chat(chat: ChatSession, message: ChatMessage) -> None:
    """Оповещение операторов о первом сообщении посетителя."""
    try:
        await send_telegram_message(format_new_chat_text(chat, message))
    except TelegramSendError as e:
        logger.warning(f'Chat {chat.id}: operator notification failed: {e}')
