"""Centralized battle server configuration, read from env vars."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# --- Matchmaking ---
QUEUE_WAIT_SECONDS = float(os.getenv("QUEUE_WAIT_SECONDS", "30"))

# --- Battle timing ---
ROUND_DURATION_SECONDS = float(os.getenv("ROUND_DURATION_SECONDS", "30"))
INTERMISSION_SECONDS = float(os.getenv("INTERMISSION_SECONDS", "2"))
QUESTIONS_PER_BATTLE = int(os.getenv("QUESTIONS_PER_BATTLE", "5"))

# --- Scoring (fixed policy) ---
SPEED_BONUS_WINDOW_MS = 7000
SPEED_BONUS_POINTS = 15
BASE_POINTS = 10

# --- Bot opponent ---
BOT_ID = "__bot__"
BOT_DISPLAY_NAME = os.getenv("BOT_DISPLAY_NAME", "Quiz Bot")
BOT_AVATAR = "🤖"
BOT_ACCURACY = 0.75
BOT_MIN_DELAY_SECONDS = float(os.getenv("BOT_MIN_DELAY_SECONDS", "2"))
BOT_MAX_DELAY_SECONDS = float(os.getenv("BOT_MAX_DELAY_SECONDS", "8"))
BOT_DELAY_CEILING_RATIO = 0.9  # bot always answers before this share of the round

# --- Question source ---
QUESTION_SOURCE_URL = os.getenv(
    "QUESTION_SOURCE_URL",
    "https://opentdb.com/api.php?amount={count}&type=multiple",
)
QUESTION_FETCH_TIMEOUT = float(os.getenv("QUESTION_FETCH_TIMEOUT", "5"))
QUESTION_FETCH_RETRIES = 2

# --- Private rooms ---
ROOM_CODE_LENGTH = 6
MAX_ROOM_CODE_ATTEMPTS = 10

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_AVATAR_LENGTH = 10  # emoji avatars only
MAX_NICKNAME_LENGTH = 20

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
