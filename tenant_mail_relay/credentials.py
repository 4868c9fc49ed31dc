"""SMTP credentials shared by every send, swappable at runtime."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from .errors import ValidationError
from .logger import get_logger
from .persistence import Persistence

CONFIG_USER_KEY = "smtp_user"
CONFIG_PASS_KEY = "smtp_pass"


@dataclass(frozen=True)
class TransportCredentials:
    """SMTP login pair. Both empty means the relay is used without AUTH."""

    user: str = ""
    password: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.user)


class ReadWriteLock:
    """asyncio lock allowing concurrent readers and one exclusive writer.

    Waiting writers block new readers so a steady stream of sends cannot
    starve a credential update.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and not self._readers)
            except BaseException:
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class CredentialsStore:
    """Current :class:`TransportCredentials` backed by the ``config`` table."""

    def __init__(self, persistence: Persistence, initial: Optional[TransportCredentials] = None, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("TenantMailRelay.credentials")
        self._current = initial or TransportCredentials()
        self._lock = ReadWriteLock()

    async def load(self) -> TransportCredentials:
        """Apply persisted overrides on top of the configured credentials."""
        user = await self.persistence.get_config(CONFIG_USER_KEY)
        password = await self.persistence.get_config(CONFIG_PASS_KEY)
        async with self._lock.write():
            current = self._current
            self._current = TransportCredentials(
                user=user if user is not None else current.user,
                password=password if password is not None else current.password,
            )
            loaded = self._current
        if loaded.configured:
            self.logger.info("SMTP credentials loaded (user=%s)", loaded.user)
        else:
            self.logger.info("No SMTP credentials configured")
        return loaded

    async def get(self) -> TransportCredentials:
        """Return the current credentials snapshot."""
        async with self._lock.read():
            return self._current

    async def set(self, user: str, password: str) -> TransportCredentials:
        """Persist new credentials and make them visible to the next send."""
        if not user or not password:
            raise ValidationError("user and pass are required")
        await self.persistence.set_config_values({CONFIG_USER_KEY: user, CONFIG_PASS_KEY: password})
        creds = TransportCredentials(user=user, password=password)
        async with self._lock.write():
            self._current = creds
        self.logger.info("SMTP credentials updated (user=%s)", user)
        return creds
