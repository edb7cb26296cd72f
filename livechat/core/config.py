from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    app_title: str = 'MetaEdge Live Chat'
    app_description: str = 'Live chat between site visitors and operators'
    database_url: str = Field(
        'sqlite+aiosqlite:///./livechat.db',
        json_schema_extra={'env': 'DATABASE_URL'}
    )
    test_database_url: str = Field(
        'sqlite+aiosqlite:///./test_livechat.db',
        json_schema_extra={'env': 'TEST_DATABASE_URL'}
    )
    use_test_db: bool = False
    database_echo: bool = False

    jwt_secret: str = Field(
        'change-me',
        json_schema_extra={'env': 'JWT_SECRET'}
    )
    jwt_algorithm: str = 'HS256'

    cors_origins: list[str] = Field(default_factory=list)
    log_file: str = 'livechat.log'

    chat_history_limit: int = 50
    chat_send_timeout: float = 5.0
    # 0 отключает автоматическое закрытие
    chat_inactive_hours: int = 72
    chat_cleanup_interval_minutes: int = 60
    chat_auto_reply_text: str | None = (
        "Hi there! Thanks for reaching out. We're right here and will "
        "reply to you shortly. Please feel free to share more details "
        "in the meantime!"
    )
    chat_auto_reply_delay: float = 1.5
    chat_support_name: str = 'MetaEdge Support'

    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def get_database_url(self, test: bool = False) -> str:
        return self.test_database_url if test else self.database_url


settings = Settings()
