# scheduler.py
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from livechat.core.config import settings
from livechat.core.exceptions import StoreError
from livechat.models.chat import utcnow

logger = logging.getLogger('livechat')


def start_scheduler(app: FastAPI) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.configure(timezone="UTC")

    scheduler.add_job(
        func=close_inactive_chats_task,
        trigger='interval',
        args=[app],
        id='close_inactive_chats',
        name='Close inactive chat sessions',
        minutes=settings.chat_cleanup_interval_minutes,
    )

    scheduler.start()
    logger.info('Scheduler started.')
    return scheduler


async def close_inactive_chats_task(app: FastAPI):
    logger.info('Starting close_inactive_chats_task')
    cutoff = utcnow() - timedelta(hours=settings.chat_inactive_hours)
    try:
        closed = await app.state.chat.protocol.close_inactive_sessions(cutoff)
    except StoreError as e:
        logger.error(f'Закрытие неактивных чатов не удалось: {e}')
        return
    logger.info(f'Closed {len(closed)} inactive chat sessions')
