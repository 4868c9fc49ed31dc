"""Domain directory: owns the domain to bearer token mapping."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List

from .errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from .logger import get_logger
from .persistence import Persistence, now_millis


def normalise_domain(value: str | None) -> str:
    """Lowercase and trim a domain name."""
    return (value or "").strip().lower()


class DomainDirectory:
    """Register, list and remove domains and resolve their tokens."""

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("TenantMailRelay.directory")

    async def register(self, domain: str) -> Dict[str, str]:
        """Register ``domain`` and return it together with a fresh token.

        Only a minimal sanity check is applied: the name must be non-empty
        and contain a dot.
        """
        name = normalise_domain(domain)
        if not name or "." not in name:
            raise ValidationError("invalid domain")
        token = str(uuid.uuid4())
        await self.persistence.insert_domain(name, token, now_millis())
        self.logger.info("Domain %s registered", name)
        return {"domain": name, "token": token}

    async def list(self) -> List[Dict[str, Any]]:
        """Return ``{domain, created_at}`` entries ordered by domain."""
        return await self.persistence.list_domains()

    async def delete(self, domain: str) -> None:
        """Remove a domain; its token stops authorizing immediately."""
        name = normalise_domain(domain)
        if not await self.persistence.delete_domain(name):
            raise NotFoundError("domain not found")
        self.logger.info("Domain %s deleted", name)

    async def lookup_by_token(self, token: str) -> str:
        """Return the domain authorized by ``token``."""
        domain = await self.persistence.domain_for_token(token)
        if domain is None:
            raise NotFoundError("unknown token")
        return domain

    async def seed(self, domains: Iterable[str]) -> List[str]:
        """Register every domain not yet present; never raises.

        Returns the names that were newly registered.
        """
        seeded: List[str] = []
        for raw in domains:
            name = normalise_domain(raw)
            if not name:
                continue
            try:
                entry = await self.register(name)
            except ConflictError:
                self.logger.debug("Seed domain %s already registered", name)
                continue
            except (ValidationError, PersistenceError) as exc:
                self.logger.warning("Failed to seed domain %s: %s", name, exc)
                continue
            self.logger.info("Seeded domain %s (token=%s)", entry["domain"], entry["token"])
            seeded.append(entry["domain"])
        return seeded
