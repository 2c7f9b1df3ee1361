from typing import Optional
from ..models.user import User
from .interfaces import UserDirectory

class UserService(UserDirectory):
    def __init__(self, db):
        self.db = db

    async def register_user(self, user_id: int, username: Optional[str],
                          first_name: Optional[str], last_name: Optional[str],
                          email: Optional[str] = None) -> bool:
        """Create or refresh a user record"""
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO users (user_id, username, first_name, last_name, email)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id)
                DO UPDATE SET
                    username = EXCLUDED.username,
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    email = COALESCE(EXCLUDED.email, users.email),
                    updated_at = CURRENT_TIMESTAMP
            """, user_id, username, first_name, last_name, email)
            return True

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.db.pool.acquire() as conn:
            user = await conn.fetchrow("""
                SELECT * FROM users WHERE user_id = $1
            """, user_id)
            return User(**dict(user)) if user else None
