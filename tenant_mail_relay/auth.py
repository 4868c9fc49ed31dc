"""Bearer token authorization for message submission.

A token authorizes exactly one domain. A submission is accepted only when
the domain part of its ``From`` address equals that domain, compared
case-insensitively.
"""

from __future__ import annotations

from typing import Optional

from .directory import DomainDirectory
from .errors import AuthError, ForbiddenError, NotFoundError, ValidationError

BEARER_PREFIX = "Bearer "


def extract_token(header_value: Optional[str]) -> Optional[str]:
    """Return the token carried by an ``Authorization`` header value.

    Both ``Bearer <token>`` and a raw token are accepted.
    """
    if header_value is None:
        return None
    value = header_value.strip()
    if value.startswith(BEARER_PREFIX):
        value = value[len(BEARER_PREFIX):].strip()
    return value or None


def extract_domain(address: Optional[str]) -> Optional[str]:
    """Return the lowercased domain of ``user@domain`` or ``Name <user@domain>``.

    >>> extract_domain("Name <USER@Example.COM>")
    'example.com'
    """
    if not address:
        return None
    addr = address.strip()
    start = addr.find("<")
    if start != -1:
        end = addr.find(">", start)
        if end == -1:
            return None
        addr = addr[start + 1:end].strip()
    local, sep, domain = addr.rpartition("@")
    if not sep or not local or not domain.strip():
        return None
    return domain.strip().lower()


async def authorize(directory: DomainDirectory, token: Optional[str], from_addr: str) -> str:
    """Check that ``token`` may send as ``from_addr``; return the domain."""
    token = extract_token(token)
    if not token:
        raise AuthError("missing Authorization header")
    try:
        authorized = await directory.lookup_by_token(token)
    except NotFoundError as exc:
        raise AuthError("invalid token") from exc

    from_domain = extract_domain(from_addr)
    if from_domain is None:
        raise ValidationError("invalid from address")
    if from_domain != authorized.lower():
        directory.logger.warning(
            "Rejected sender domain %s for token of %s", from_domain, authorized
        )
        raise ForbiddenError(
            f"token authorizes domain '{authorized}', but from address uses '{from_domain}'"
        )
    return authorized
