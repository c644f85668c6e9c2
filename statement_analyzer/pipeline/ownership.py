from __future__ import annotations

import logging
from typing import Callable, Protocol

from statement_analyzer.storage.models import UserRecord
from statement_analyzer.utils.error_taxonomy import build_error_details

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    def find_user_by_email(self, email: str) -> UserRecord | None: ...

    def find_user_by_id(self, user_id: str) -> UserRecord | None: ...


def looks_like_email(value: str) -> bool:
    return "@" in value


def canonical_owner(owner: str, *, resolver: IdentityResolver) -> str:
    """Account id for an email owner when the account exists, else ``owner``."""
    if not looks_like_email(owner):
        return owner

    user = _lookup(resolver.find_user_by_email, owner)
    return user.user_id if user is not None else owner


def is_owner(job_owner: str, requester: str, *, resolver: IdentityResolver) -> bool:
    """Ownership check tolerating records keyed by email or by account id.

    Legacy records store the owner's email; current records store the
    account id. Resolution is attempted once, in the direction implied by
    the stored format.
    """
    if job_owner == requester:
        return True
    if not job_owner or not requester:
        return False

    if looks_like_email(job_owner):
        user = _lookup(resolver.find_user_by_email, job_owner)
        matched = user is not None and user.user_id == requester
    else:
        user = _resolve_account(requester, resolver=resolver)
        matched = user is not None and (
            user.user_id == job_owner or user.email.lower() == job_owner.lower()
        )

    if matched:
        logger.info("Owner matched through identity resolution")
    return matched


def owner_aliases(owner: str, *, resolver: IdentityResolver) -> list[str]:
    """Every stored form under which ``owner``'s records may live."""
    aliases = [owner]
    if looks_like_email(owner):
        user = _lookup(resolver.find_user_by_email, owner)
        alias = user.user_id if user is not None else None
    else:
        user = _lookup(resolver.find_user_by_id, owner)
        alias = user.email if user is not None else None

    if alias and alias not in aliases:
        aliases.append(alias)
    return aliases


def _lookup(
    finder: Callable[[str], UserRecord | None], value: str
) -> UserRecord | None:
    try:
        return finder(value)
    except Exception as error:  # noqa: BLE001
        logger.error("Identity lookup failed: %s", build_error_details(error))
        return None


def _resolve_account(
    requester: str, *, resolver: IdentityResolver
) -> UserRecord | None:
    if looks_like_email(requester):
        return _lookup(resolver.find_user_by_email, requester)
    return _lookup(resolver.find_user_by_id, requester)
