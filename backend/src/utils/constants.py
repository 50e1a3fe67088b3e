"""Shared constants for the room chat backend."""

# Delivery pointers expire after 30 days; an expired pointer only costs a
# recent-window resync on the next rejoin.
POINTER_TTL_SECONDS: int = 86400 * 30

USER_LAST_RECEIVED_KEY_PREFIX = "user"
ROOM_LATEST_MESSAGE_KEY_PREFIX = "room"

# Catch-up windows
DEFAULT_RECENT_WINDOW: int = 50
DEFAULT_CONTEXT_WINDOW: int = 20

# AI streaming
STREAM_CHUNK_SIZE: int = 160
MAX_SOURCES: int = 3
AI_MAX_TOKENS: int = 1024

AI_ASSISTANT_USER_ID = "ai-assistant"
AI_ASSISTANT_NAME = "AI Assistant"

# Completion models
AI_STREAM_DEFAULT_MODEL = "claude-haiku-4-5"
AI_STREAM_CODE_MODEL = "claude-sonnet-4-5"
ALLOWED_AI_MODELS = frozenset({AI_STREAM_DEFAULT_MODEL, AI_STREAM_CODE_MODEL})

# Bedrock inference profiles for the allowed models
BEDROCK_MODEL_IDS = {
    "claude-haiku-4-5": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
    "claude-sonnet-4-5": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
}

# Web search
WEB_SEARCH_DEFAULT_MAX_RESULTS: int = 5
WEB_SEARCH_DEFAULT_TIMEOUT_MS: int = 6000
WEB_SEARCH_DEFAULT_QUOTA_COOLDOWN_MS: int = 3600000
WEB_SEARCH_TOOL_LOOP_LIMIT: int = 2
NATIVE_WEB_SEARCH_MAX_USES: int = 2
