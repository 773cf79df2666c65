"""Runtime settings, read from the environment (with defaults that work out of the box)."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOME = Path.home() / ".agent-chess-data"
DATABASE_FILENAME = "agent-chess.db"

# Session id pool: short ids that are easy to type for a human watching the game
SESSION_ID_POOL: tuple[str, ...] = tuple(str(i) for i in range(1, 11))

MAX_CONSECUTIVE_ILLEGAL_MOVES = 5
TICKET_LENGTH = 5
TICKET_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
TICKET_MINT_ATTEMPTS = 50
THINKING_MAX_CHARS = 1200


@dataclass(frozen=True)
class Settings:
    home: Path = DEFAULT_HOME
    database_url: str | None = None
    log_level: str = "WARNING"
    wait_timeout_s: float = 120.0
    poll_interval_s: float = 2.0
    inactivity_timeout_s: float = 300.0
    lock_timeout_s: float = 5.0
    lock_poll_s: float = 0.05
    lock_lease_s: float | None = 60.0

    @property
    def lock_dir(self) -> Path:
        return self.home / "locks"

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.home / DATABASE_FILENAME}"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def load_settings() -> Settings:
    """Build Settings from AGENT_CHESS_* environment variables."""
    home = Path(os.getenv("AGENT_CHESS_HOME", str(DEFAULT_HOME))).expanduser()
    lease = _env_float("AGENT_CHESS_LOCK_LEASE", 60.0)
    return Settings(
        home=home,
        database_url=os.getenv("AGENT_CHESS_DATABASE_URL") or None,
        log_level=os.getenv("AGENT_CHESS_LOG_LEVEL", "WARNING").upper(),
        wait_timeout_s=_env_float("AGENT_CHESS_WAIT_TIMEOUT", 120.0),
        poll_interval_s=_env_float("AGENT_CHESS_POLL_INTERVAL", 2.0),
        inactivity_timeout_s=_env_float("AGENT_CHESS_INACTIVITY_TIMEOUT", 300.0),
        lock_timeout_s=_env_float("AGENT_CHESS_LOCK_TIMEOUT", 5.0),
        # a lease of 0 switches stale-lock reclaiming off
        lock_lease_s=lease or None,
    )
