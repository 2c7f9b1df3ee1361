from typing import Optional
from .base import TimeStampedModel

class User(TimeStampedModel):
    """Customer account; user_id doubles as the Telegram chat id"""
    user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        full_name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full_name or self.username or str(self.user_id)
