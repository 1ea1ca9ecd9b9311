"""Fixed-window rate limit counters shared between instances through the database."""

from sqlmodel import Field, SQLModel


class RateLimitBucket(SQLModel, table=True):
    key: str = Field(primary_key=True)
    count: int = Field(default=0)
    reset_at: float  # epoch seconds when the window ends
