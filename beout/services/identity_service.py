"""Map a verified third-party identity to a local user: find, link, or create.

Resolution order, inside one transaction:

1. ``(provider, provider_id)`` match -> that user.
2. ``email`` match -> re-link the row to the new provider identity.
3. otherwise create the user and its profile.

Step 2 silently moves an existing account to whichever provider signed in
last with the same email. That is the current product behaviour and is kept
as-is; see DESIGN.md (open questions) before changing it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beout.metrics import users_created_total
from beout.models.user import User, UserProfile
from beout.schemas.auth import UserSummary
from beout.schemas.identity import IdentityAssertion

logger = logging.getLogger(__name__)


def split_display_name(name: str | None) -> tuple[str, str]:
    """``"Ada Lovelace King"`` -> ``("Ada", "Lovelace King")``."""
    if not name:
        return "", ""
    first, _, last = name.strip().partition(" ")
    return first, last.strip()


def to_summary(user: User) -> UserSummary:
    return UserSummary(
        id=str(user.id),
        email=user.email,
        role=user.role,
        is_verified=user.is_verified,
        provider=user.provider,
        created_at=user.created_at,
        last_login=user.last_login,
    )


async def resolve_user(session: AsyncSession, assertion: IdentityAssertion, now: datetime | None = None) -> User:
    """Find, link or create the user for ``assertion`` in the caller's transaction."""
    now = now or datetime.now(timezone.utc)

    result = await session.execute(
        select(User).where(
            User.provider == assertion.provider,
            User.provider_id == assertion.provider_user_id,
        )
    )
    user = result.scalar_one_or_none()
    if user is not None:
        user.last_login = now
        await session.flush()
        return user

    result = await session.execute(select(User).where(User.email == assertion.email))
    user = result.scalar_one_or_none()
    if user is not None:
        logger.info("Linking user %s to provider %s", user.id, assertion.provider)
        user.provider = assertion.provider
        user.provider_id = assertion.provider_user_id
        user.last_login = now
        if assertion.avatar_url and not user.avatar_url:
            user.avatar_url = assertion.avatar_url
        await session.flush()
        users_created_total.labels(provider=assertion.provider, action="linked").inc()
        return user

    if assertion.given_name is not None or assertion.family_name is not None:
        first_name, last_name = assertion.given_name or "", assertion.family_name or ""
    else:
        first_name, last_name = split_display_name(assertion.display_name)

    user = User(
        email=assertion.email,
        provider=assertion.provider,
        provider_id=assertion.provider_user_id,
        role="user",
        is_verified=True,
        avatar_url=assertion.avatar_url,
        last_login=now,
    )
    user.profile = UserProfile(first_name=first_name, last_name=last_name)
    session.add(user)
    await session.flush()
    users_created_total.labels(provider=assertion.provider, action="created").inc()
    logger.info("Created user %s via %s", user.id, assertion.provider)
    return user


class IdentityResolver:
    """Runs ``resolve_user`` in its own short transaction.

    Two first-time logins racing on the same email (or provider id) both
    miss steps 1 and 2; the loser hits the unique constraint, rolls back and
    retries once, at which point it finds the winner's row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_attempts: int = 2) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def resolve(self, assertion: IdentityAssertion) -> UserSummary:
        attempt = 1
        while True:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        user = await resolve_user(session, assertion)
                    return to_summary(user)
            except IntegrityError:
                if attempt >= self._max_attempts:
                    raise
                attempt += 1
                logger.warning("Identity resolution conflict for %s, retrying", assertion.provider)
