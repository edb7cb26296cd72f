import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livechat.api.chat import router as chat_router
from livechat.api.chat_ws import router as chat_ws_router
from livechat.core.config import settings
from livechat.core.db import get_async_session, get_engine
from livechat.services.chat_hub import create_chat_hub
from livechat.services.scheduler import start_scheduler

# --- Логирование ---
logger = logging.getLogger('livechat')
logger.setLevel(logging.DEBUG)

handler = RotatingFileHandler(
    settings.log_file, maxBytes=200000, backupCount=100
)
handler.setLevel(logging.DEBUG)

formatter = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
handler.setFormatter(formatter)
logger.addHandler(handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 1) Один engine и одна фабрика сессий на процесс
    engine = get_engine(test=settings.use_test_db)
    app.state.session_factory = get_async_session(engine=engine)
    # 2) Хаб чата: реестр соединений, рассылка, обработчик протокола
    app.state.chat = create_chat_hub(app.state.session_factory)
    if settings.jwt_secret == 'change-me':
        logger.warning('JWT_SECRET not set; using the development secret')
    # 3) Планировщик закрывает неактивные сессии
    app.state.scheduler = None
    if settings.chat_inactive_hours > 0:
        app.state.scheduler = start_scheduler(app)
    try:
        yield
    finally:
        try:
            if app.state.scheduler:
                app.state.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.exception(f'Scheduler shutdown error: {e}')
        await app.state.chat.aclose()
        await engine.dispose()


app = FastAPI(
    title=settings.app_title,
    description=settings.app_description,
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    return {"status": 'ok'}


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PATCH', 'OPTIONS'],
    allow_headers=['*'],
)
app.include_router(chat_router)
app.include_router(chat_ws_router)
