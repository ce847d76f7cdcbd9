"""Domain ports (interfaces) for dependency inversion.

Hey future me - the application layer only ever talks to these ABCs. The concrete
SQLAlchemy implementation lives in infrastructure/persistence/repositories.py. Tests swap
in AsyncMock(spec=ITokenStore) when they don't want a database.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from listenlog.domain.entities import Connection


class ITokenStore(ABC):
    """Persistence for per-user OAuth credentials."""

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> Connection | None:
        """Load the user's connection (active or not). None if never connected."""
        pass

    @abstractmethod
    async def create_or_reactivate(
        self,
        user_id: str,
        external_user_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> Connection:
        """Store fresh credentials after an authorization-code exchange."""
        pass

    @abstractmethod
    async def update_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> None:
        """Persist a refreshed token bundle."""
        pass

    @abstractmethod
    async def deactivate(self, user_id: str) -> None:
        """Flip is_active to False (revoke or dead refresh grant)."""
        pass

    @abstractmethod
    async def mark_last_sync(self, user_id: str, at: datetime | None = None) -> None:
        """Record a completed sync attempt."""
        pass

    @abstractmethod
    async def list_due_for_sync(self, older_than: datetime) -> list[Connection]:
        """Active connections never synced or last synced before `older_than`."""
        pass


__all__ = ["ITokenStore"]
