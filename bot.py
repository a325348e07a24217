import os
import sqlite3
import asyncio

import discord
from discord.ext import commands
from openai import OpenAI
from db.migrate import apply_sqlite_migrations
from memory.conversations import ConversationStore
from memory.embeddings import DEFAULT_EMBEDDING_MODEL
from memory.embeddings import Embedder
from memory.engine import MemoryEngineDeps
from memory.tasks import BackgroundTaskQueue
from memory.tuning import load_memory_tuning
from misc.chunking import send_chunked
from misc.discord_gates import message_in_allowed_channels
from misc.env_config import env_flag
from misc.env_config import env_str
from misc.env_config import parse_id_set
from misc.env_config import parse_str_set
from misc.runtime_wiring import wire_bot_runtime

# =========================
# ENV
# =========================
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

if not DISCORD_TOKEN:
    raise RuntimeError("Missing DISCORD_TOKEN env var")
if not OPENAI_API_KEY:
    raise RuntimeError("Missing OPENAI_API_KEY env var")

OPENAI_MODEL = env_str("OPENAI_MODEL", "gpt-4o-mini")
EMBEDDING_MODEL = env_str("BRI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)

# Persistent path (point this at a mounted volume in deployment)
DB_PATH = env_str("BRI_DB_PATH", "bri_memory.db")

# =========================
# MEMORY CONFIG
# =========================
#   BRI_MEMORY_ENABLE_EXTRACTION = 0/1   (default: 1)
#   BRI_MEMORY_ENABLE_MAINTENANCE = 0/1  (default: 1)
#   BRI_MEMORY_TUNING_PATH = path to YAML thresholds/intervals
ENABLE_EXTRACTION = env_flag("BRI_MEMORY_ENABLE_EXTRACTION", True)
ENABLE_MAINTENANCE = env_flag("BRI_MEMORY_ENABLE_MAINTENANCE", True)

REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
MEMORY_TUNING_PATH = os.getenv(
    "BRI_MEMORY_TUNING_PATH",
    os.path.join(REPO_ROOT, "config", "memory_tuning.yaml"),
)
MEMORY_TUNING, MEMORY_TUNING_WARNING = load_memory_tuning(MEMORY_TUNING_PATH)
if MEMORY_TUNING_WARNING:
    print(f"[CFG] {MEMORY_TUNING_WARNING}")

print(
    f"[CFG] model={OPENAI_MODEL} embedding_model={EMBEDDING_MODEL} db={DB_PATH} "
    f"extraction={ENABLE_EXTRACTION} maintenance={ENABLE_MAINTENANCE} "
    f"tuning={MEMORY_TUNING_PATH}"
)

# =========================
# ALLOWED CHANNELS + OWNERS
# =========================
# Empty allowlist: respond to mentions in every channel. DMs are always allowed.
ALLOWED_CHANNEL_IDS = parse_id_set(os.getenv("BRI_ALLOWED_CHANNEL_IDS"))
OWNER_USER_IDS = parse_id_set(os.getenv("BRI_OWNER_USER_IDS"))
OWNER_USERNAMES = parse_str_set(os.getenv("BRI_OWNER_USERNAMES"))

print(
    f"[CFG] allowed_channels={len(ALLOWED_CHANNEL_IDS) or 'all'} "
    f"owner_ids={len(OWNER_USER_IDS)} owner_names={len(OWNER_USERNAMES)}"
)

SYSTEM_PROMPT_BASE = """
You are Bri, a helpful AI assistant with the personality of a 14-year-old girl.
You live in Discord and chat with people when they mention you or DM you.

Core behavior:
- Cheerful, energetic and kind, but still accurate and helpful.
- Keep answers short unless someone asks for more.
- Use what you remember about the user naturally. Never recite your memory list back at them.
- If a remembered detail is marked "(I think)", treat it as a guess and check before relying on it.
- If you don't know something, say so.

Safety:
- No self-harm encouragement, no instructions for serious harm or illegal activity.
- For medical, legal or financial topics, give general information and suggest asking a grown-up or a professional.
""".strip()

client = OpenAI(api_key=OPENAI_API_KEY)


# =========================
# DB
# =========================
def init_db(db_path: str) -> sqlite3.Connection:
    # check_same_thread=False because discord.py event loop + to_thread usage
    conn = sqlite3.connect(db_path, check_same_thread=False)
    cur = conn.cursor()

    # Performance + safety defaults
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    applied = apply_sqlite_migrations(conn, os.path.join(REPO_ROOT, "migrations"))
    print(f"[DB] ready path={db_path} applied_now={len(applied)}")
    return conn


db_conn = init_db(DB_PATH)

# Serialize DB access across async tasks
db_lock = asyncio.Lock()

# =========================
# MEMORY ENGINE
# =========================
engine_deps = MemoryEngineDeps(
    db_lock=db_lock,
    db_conn=db_conn,
    embedder=Embedder(
        client,
        model=EMBEDDING_MODEL,
        cache_size=int(MEMORY_TUNING.embedding_cache_size),
    ),
    tasks=BackgroundTaskQueue(name="memory"),
    client=client,
    openai_model=OPENAI_MODEL,
    tuning=MEMORY_TUNING,
)

conversations = ConversationStore(context_length=int(MEMORY_TUNING.conversation_context_length))


def user_is_owner(user: discord.abc.User) -> bool:
    uid = int(getattr(user, "id", 0) or 0)
    if uid and uid in OWNER_USER_IDS:
        return True
    if OWNER_USER_IDS:
        return False

    names = {
        str(getattr(user, "name", "") or "").strip().lower(),
        str(getattr(user, "global_name", "") or "").strip().lower(),
        str(getattr(user, "display_name", "") or "").strip().lower(),
    }
    return any(n in OWNER_USERNAMES for n in names if n)


def in_allowed_channel(ctx: commands.Context) -> bool:
    return message_in_allowed_channels(ctx.message, ALLOWED_CHANNEL_IDS)


# =========================
# DISCORD BOT
# =========================
intents = discord.Intents.default()
intents.message_content = True

bot = commands.Bot(command_prefix="!", intents=intents)

wire_bot_runtime(
    bot,
    engine_deps=engine_deps,
    conversations=conversations,
    allowed_channel_ids=ALLOWED_CHANNEL_IDS,
    in_allowed_channel=in_allowed_channel,
    user_is_owner=user_is_owner,
    send_chunked=send_chunked,
    system_prompt_base=SYSTEM_PROMPT_BASE,
    bot_name="Bri",
    enable_extraction=ENABLE_EXTRACTION,
    enable_maintenance=ENABLE_MAINTENANCE,
)


bot.run(DISCORD_TOKEN)
