MAX_MESSAGE_LENGTH = 4000
MAX_VISITOR_ID_LENGTH = 255
MAX_VISITOR_NAME_LENGTH = 255
MAX_EMAIL_LENGTH = 255
MAX_SESSION_ID_LENGTH = 36

CHAT_HISTORY_LIMIT = 50

WS_CHAT_PATH = '/ws/chat'
WS_CLOSE_INVALID_TOKEN = 4001
WS_CLOSE_POLICY_VIOLATION = 1008

# Reconnect (client side)
RECONNECT_DELAY = 3.0
RECONNECT_FACTOR = 2.0
RECONNECT_MAX_DELAY = 60.0
RECONNECT_JITTER = 0.5

TEMP_MESSAGE_PREFIX = 'temp_'
VISITOR_ID_PREFIX = 'v_'

STORE_FAILURE_CODE = 'store_failure'
STORE_FAILURE_DETAIL = 'Your message may not have been saved'

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'
TELEGRAM_TIMEOUT = 10
