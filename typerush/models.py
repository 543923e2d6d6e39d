from typing import Optional
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field
from datetime import datetime


# timestamps are always written as aware UTC
class GameRun(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    token_hash: str = Field(index=True)  # sha256 hex; the raw token is never stored
    issued_at: datetime = Field(sa_type=DateTime(timezone=True))
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
    ip: str = "unknown"
    user_agent: str = "unknown"
    game_mode: int
    player_name: str
    used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class GameResult(SQLModel, table=True):
    # one rolling personal best per player and mode
    __table_args__ = (
        UniqueConstraint("player_name", "game_mode", name="uq_gameresult_player_mode"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    player_name: str
    game_mode: int
    score: float
    lps: float
    accuracy: float
    rank: str
    time: float
    ms_per_letter: float
    is_twitter_user: bool = False
    created_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    updated_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
