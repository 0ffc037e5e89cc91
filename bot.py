import os
import re
import sqlite3
import asyncio
import discord
from discord.ext import commands
from bottles.assets import AssetExternalizer
from bottles.delivery import DeliveryEngine
from bottles.delivery import RetryPolicy
from bottles.service import BottleService
from bottles.service import BottleSettings
from config.defaults import DEFAULT_ASSET_DIR
from config.defaults import DEFAULT_ASSET_MODE
from config.defaults import DEFAULT_BOTTLE_PAGE_SIZE
from config.defaults import DEFAULT_BROADCAST_MAX_SECONDS
from config.defaults import DEFAULT_BROADCAST_MIN_SECONDS
from config.defaults import DEFAULT_BROADCAST_TARGETS_FILE
from config.defaults import DEFAULT_COMMAND_PREFIX
from config.defaults import DEFAULT_COMMENT_PAGE_SIZE
from config.defaults import DEFAULT_DB_PATH
from config.defaults import DEFAULT_DIRECTORY_PAGE_SIZE
from config.defaults import DEFAULT_FEATURED_PAGE_SIZE
from config.defaults import DEFAULT_FEATURED_THRESHOLD
from config.defaults import DEFAULT_MAX_LENGTH
from config.defaults import DEFAULT_MAX_RETRY
from config.defaults import DEFAULT_MESSAGE_CACHE_SIZE
from config.defaults import DEFAULT_NAME_PAGE_SIZE
from config.defaults import DEFAULT_PROMPT_TIMEOUT_SECONDS
from config.defaults import DEFAULT_RETRY_INTERVAL_MS
from config.defaults import DISCORD_MAX_MESSAGE_LEN
from db.migrate import apply_sqlite_migrations
from jobs.broadcast import BroadcastScheduler
from jobs.broadcast import load_broadcast_targets
from misc.discord_transport import DiscordTransport
from misc.message_cache import BoundedMessageMap
from misc.prompts import make_confirm
from misc.runtime_wiring import wire_bot_runtime

# =========================
# ENV
# =========================
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))


def env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip() == "1"


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        print(f"[CFG] {name}={raw!r} is not an integer; using {default}")
        return default


def parse_id_set(raw: str | None) -> set[str]:
    if not raw:
        return set()
    return {tok for tok in re.split(r"[\s,;]+", raw.strip()) if re.fullmatch(r"\d{8,22}", tok)}


DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
DB_PATH = os.getenv("DRIFTBOTTLE_DB_PATH", DEFAULT_DB_PATH)
COMMAND_PREFIX = os.getenv("DRIFTBOTTLE_COMMAND_PREFIX", DEFAULT_COMMAND_PREFIX).strip() or DEFAULT_COMMAND_PREFIX
OPERATOR_USER_IDS = parse_id_set(os.getenv("DRIFTBOTTLE_OPERATOR_USER_IDS"))

MAX_LENGTH = env_int("DRIFTBOTTLE_MAX_LENGTH", DEFAULT_MAX_LENGTH)
ALLOW_MEDIA = env_flag("DRIFTBOTTLE_ALLOW_MEDIA", "1")
ALLOW_DROP_OTHERS = env_flag("DRIFTBOTTLE_ALLOW_DROP_OTHERS", "0")
SELF_DROP = env_flag("DRIFTBOTTLE_SELF_DROP", "0")
MAX_RETRY = env_int("DRIFTBOTTLE_MAX_RETRY", DEFAULT_MAX_RETRY)
RETRY_INTERVAL_MS = env_int("DRIFTBOTTLE_RETRY_INTERVAL_MS", DEFAULT_RETRY_INTERVAL_MS)
DEBUG = env_flag("DRIFTBOTTLE_DEBUG", "0")
PREVIEW = env_flag("DRIFTBOTTLE_PREVIEW", "1")
SHOW_INSTRUCTIONS = env_flag("DRIFTBOTTLE_SHOW_INSTRUCTIONS", "1")
FEATURED_THRESHOLD = env_int("DRIFTBOTTLE_FEATURED_THRESHOLD", DEFAULT_FEATURED_THRESHOLD)

COMMENT_PAGE_SIZE = env_int("DRIFTBOTTLE_COMMENT_PAGE_SIZE", DEFAULT_COMMENT_PAGE_SIZE)
BOTTLE_PAGE_SIZE = env_int("DRIFTBOTTLE_BOTTLE_PAGE_SIZE", DEFAULT_BOTTLE_PAGE_SIZE)
FEATURED_PAGE_SIZE = env_int("DRIFTBOTTLE_FEATURED_PAGE_SIZE", DEFAULT_FEATURED_PAGE_SIZE)
NAME_PAGE_SIZE = env_int("DRIFTBOTTLE_NAME_PAGE_SIZE", DEFAULT_NAME_PAGE_SIZE)
DIRECTORY_PAGE_SIZE = env_int("DRIFTBOTTLE_DIRECTORY_PAGE_SIZE", DEFAULT_DIRECTORY_PAGE_SIZE)

ASSET_MODE = os.getenv("DRIFTBOTTLE_ASSET_MODE", DEFAULT_ASSET_MODE).strip().lower() or DEFAULT_ASSET_MODE
ASSET_DIR = os.getenv("DRIFTBOTTLE_ASSET_DIR", DEFAULT_ASSET_DIR)

BROADCAST_ENABLED = env_flag("DRIFTBOTTLE_BROADCAST_ENABLED", "0")
BROADCAST_MIN_SECONDS = env_int("DRIFTBOTTLE_BROADCAST_MIN_SECONDS", DEFAULT_BROADCAST_MIN_SECONDS)
BROADCAST_MAX_SECONDS = env_int("DRIFTBOTTLE_BROADCAST_MAX_SECONDS", DEFAULT_BROADCAST_MAX_SECONDS)
BROADCAST_TARGETS_PATH = os.getenv(
    "DRIFTBOTTLE_BROADCAST_TARGETS_PATH",
    os.path.join(REPO_ROOT, "config", DEFAULT_BROADCAST_TARGETS_FILE),
)

MESSAGE_CACHE_SIZE = env_int("DRIFTBOTTLE_MESSAGE_CACHE_SIZE", DEFAULT_MESSAGE_CACHE_SIZE)
PROMPT_TIMEOUT_SECONDS = env_int("DRIFTBOTTLE_PROMPT_TIMEOUT_SECONDS", DEFAULT_PROMPT_TIMEOUT_SECONDS)

print(
    f"[CFG] prefix={COMMAND_PREFIX} operators={len(OPERATOR_USER_IDS)} max_length={MAX_LENGTH} "
    f"media={ALLOW_MEDIA} drop_others={ALLOW_DROP_OTHERS} self_drop={SELF_DROP} preview={PREVIEW}"
)
print(
    f"[CFG] retry={MAX_RETRY}x{RETRY_INTERVAL_MS}ms debug={DEBUG} asset_mode={ASSET_MODE} asset_dir={ASSET_DIR} "
    f"featured>={FEATURED_THRESHOLD}"
)
print(
    f"[CFG] broadcast={BROADCAST_ENABLED} interval=[{BROADCAST_MIN_SECONDS}, {BROADCAST_MAX_SECONDS}]s "
    f"targets={BROADCAST_TARGETS_PATH}"
)
if not OPERATOR_USER_IDS:
    print("[CFG] DRIFTBOTTLE_OPERATOR_USER_IDS is empty; operator commands are disabled")

# =========================
# DB
# =========================
def init_db(db_path: str) -> sqlite3.Connection:
    # check_same_thread=False because discord.py event loop + to_thread usage
    conn = sqlite3.connect(db_path, check_same_thread=False)
    cur = conn.cursor()

    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    migrations_dir = os.path.join(REPO_ROOT, "migrations")
    applied = apply_sqlite_migrations(conn, migrations_dir)
    print(f"[DB] ready path={db_path} newly_applied={applied or 'none'}")
    return conn


db_conn = init_db(DB_PATH)
db_lock = asyncio.Lock()

# =========================
# DISCORD HELPERS
# =========================
def chunk_listing(text: str, limit: int = DISCORD_MAX_MESSAGE_LEN) -> list[str]:
    """Split a listing on line boundaries; a single over-long line is hard-wrapped."""
    parts: list[str] = []
    current = ""
    for line in (text or "").splitlines():
        while len(line) > limit:
            if current:
                parts.append(current)
                current = ""
            parts.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            parts.append(current)
            candidate = line
        current = candidate
    if current or not parts:
        parts.append(current)
    return parts


async def send_chunked(channel: discord.abc.Messageable, text: str) -> None:
    for part in chunk_listing(text):
        await channel.send(part)


def user_is_operator(user: discord.abc.User) -> bool:
    return str(getattr(user, "id", "") or "") in OPERATOR_USER_IDS


# =========================
# DISCORD BOT
# =========================
class DriftBottleBot(commands.Bot):
    async def close(self) -> None:
        broadcast_scheduler.stop()
        await asset_externalizer.close()
        await super().close()


intents = discord.Intents.default()
intents.message_content = True

bot = DriftBottleBot(command_prefix=COMMAND_PREFIX, intents=intents)

retry_policy = RetryPolicy(max_retry=MAX_RETRY, interval_ms=RETRY_INTERVAL_MS, debug=DEBUG)
transport = DiscordTransport(bot)
asset_externalizer = AssetExternalizer(mode=ASSET_MODE, directory=ASSET_DIR, policy=retry_policy)

bottle_service = BottleService(
    db_lock=db_lock,
    db_conn=db_conn,
    transport=transport,
    engine=DeliveryEngine(policy=retry_policy),
    assets=asset_externalizer,
    message_cache=BoundedMessageMap(MESSAGE_CACHE_SIZE),
    operator_ids=OPERATOR_USER_IDS,
    settings=BottleSettings(
        max_length=MAX_LENGTH,
        allow_media=ALLOW_MEDIA,
        allow_drop_others=ALLOW_DROP_OTHERS,
        self_drop=SELF_DROP,
        preview=PREVIEW,
        show_instructions=SHOW_INSTRUCTIONS,
        featured_threshold=FEATURED_THRESHOLD,
        comment_page_size=COMMENT_PAGE_SIZE,
        bottle_page_size=BOTTLE_PAGE_SIZE,
        featured_page_size=FEATURED_PAGE_SIZE,
        name_page_size=NAME_PAGE_SIZE,
        directory_page_size=DIRECTORY_PAGE_SIZE,
        command_prefix=COMMAND_PREFIX,
    ),
)

_presence_tasks: set[asyncio.Task] = set()


def broadcast_status(seconds_remaining: int) -> None:
    # one presence update per countdown minute
    if seconds_remaining % 60 or not bot.is_ready():
        return
    label = f"next bottle in {seconds_remaining // 60} min" if seconds_remaining else "a bottle is drifting in"
    task = asyncio.create_task(bot.change_presence(activity=discord.Game(label)))
    _presence_tasks.add(task)
    task.add_done_callback(_presence_tasks.discard)


broadcast_scheduler = BroadcastScheduler(
    transports=[transport],
    service=bottle_service,
    min_interval=BROADCAST_MIN_SECONDS,
    max_interval=BROADCAST_MAX_SECONDS,
    targets=load_broadcast_targets(BROADCAST_TARGETS_PATH) if BROADCAST_ENABLED else {},
    status_sink=broadcast_status,
)

wire_bot_runtime(
    bot,
    user_is_operator=user_is_operator,
    send_chunked=send_chunked,
    make_confirm=make_confirm,
    bottle_service=bottle_service,
    command_prefix=COMMAND_PREFIX,
    prompt_timeout_seconds=PROMPT_TIMEOUT_SECONDS,
    broadcast_enabled=BROADCAST_ENABLED,
    broadcast_loop_func=broadcast_scheduler.run,
)


bot.run(DISCORD_TOKEN)
