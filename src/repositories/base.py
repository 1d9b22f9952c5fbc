"""Base repository."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class BaseRepository(ABC, Generic[T]):
    """Repository bound to a single session; the caller owns the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @abstractmethod
    async def get(self, id: uuid.UUID) -> T | None:
        """Get an entity by ID."""
