"""
UserRepository for database operations on User model
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from database_models import User


class UserRepository:
    """
    Repository class for User database operations.
    Users are mirrored from the identity provider; ids are the provider's ids.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """
        Retrieve a user by ID.

        Args:
            user_id: Identity-provider user ID

        Returns:
            User object if found, None otherwise
        """
        return await self.db.get(User, user_id)

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - id: str
                - email: str
                Optional:
                - name: str

        Returns:
            Created User object
        """
        user = User(
            id=user_data["id"],
            email=user_data["email"].lower(),
            name=user_data.get("name"),
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get defaults without committing
        await self.db.refresh(user)
        return user
