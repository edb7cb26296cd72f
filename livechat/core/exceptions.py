class StoreError(RuntimeError):
    """Persistence failure in the chat session store."""


class TelegramSendError(RuntimeError):
    pass
