DEFAULT_DB_PATH = "driftbottle.db"
DEFAULT_COMMAND_PREFIX = "!"

DEFAULT_MAX_LENGTH = 500
DEFAULT_MAX_RETRY = 5
DEFAULT_RETRY_INTERVAL_MS = 500
DEFAULT_FEATURED_THRESHOLD = 10

# 0 = unpaginated
DEFAULT_COMMENT_PAGE_SIZE = 0
DEFAULT_BOTTLE_PAGE_SIZE = 0
DEFAULT_FEATURED_PAGE_SIZE = 0
DEFAULT_NAME_PAGE_SIZE = 0
DEFAULT_DIRECTORY_PAGE_SIZE = 0

DEFAULT_ASSET_MODE = "inline"
DEFAULT_ASSET_DIR = "data/driftbottle"

DEFAULT_BROADCAST_MIN_SECONDS = 3600
DEFAULT_BROADCAST_MAX_SECONDS = 7200
DEFAULT_BROADCAST_TARGETS_FILE = "broadcast_targets.yml"

DEFAULT_MESSAGE_CACHE_SIZE = 1000
DEFAULT_PROMPT_TIMEOUT_SECONDS = 30

DISCORD_MAX_MESSAGE_LEN = 1900
