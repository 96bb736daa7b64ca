"""
Identity Resolver - maps wallet / chat id / email to exactly one User

Lookup priority is wallet > chat > email. Identifiers that point at different
existing users are an IdentityConflictError, never a silent merge. Unknown
identities create a new user; a single match may receive missing identifiers
(backfill adds, it never overwrites).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_async_session
from models import OnboardingChannel, User, utc_now
from utils.exceptions import IdentityConflictError, NotFoundError, ValidationError
from utils.normalizers import normalize_chat_id, normalize_email, normalize_wallet_address

logger = logging.getLogger(__name__)

# Lookup and default-name priority
IDENTIFIER_PRIORITY = ("wallet_address", "chat_id", "email")


@dataclass(frozen=True)
class Identifiers:
    """Normalized external identifiers; build with Identifiers.normalized()"""

    wallet_address: Optional[str] = None
    chat_id: Optional[int] = None
    email: Optional[str] = None

    @classmethod
    def normalized(
        cls,
        wallet_address: Optional[str] = None,
        chat_id: Union[int, str, None] = None,
        email: Optional[str] = None,
    ) -> "Identifiers":
        try:
            return cls(
                wallet_address=normalize_wallet_address(wallet_address),
                chat_id=normalize_chat_id(chat_id),
                email=normalize_email(email),
            )
        except ValueError as e:
            raise ValidationError(str(e))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Identifiers":
        return cls.normalized(
            wallet_address=data.get("wallet_address"),
            chat_id=data.get("chat_id"),
            email=data.get("email"),
        )

    def present(self) -> List[Tuple[str, Any]]:
        """Supplied (field, value) pairs in priority order"""
        return [(name, getattr(self, name)) for name in IDENTIFIER_PRIORITY if getattr(self, name) is not None]

    def is_empty(self) -> bool:
        return not self.present()


@dataclass(frozen=True)
class UserProfile:
    """Profile hints applied when a user is created"""

    display_name: Optional[str] = None
    onboarding_channel: Optional[str] = None


@dataclass
class IdentityResolution:
    user: User
    created: bool = False
    backfilled_fields: List[str] = field(default_factory=list)


def coerce_identifiers(identifiers: Union[Identifiers, Mapping[str, Any], None]) -> Identifiers:
    """Normalize a mapping (or pass through Identifiers); at least one is required"""
    if identifiers is None:
        ids = Identifiers()
    elif isinstance(identifiers, Identifiers):
        ids = identifiers
    else:
        ids = Identifiers.from_mapping(identifiers)
    if ids.is_empty():
        raise ValidationError("At least one of wallet address, chat id or email is required")
    return ids


def default_display_name(identifiers: Identifiers) -> str:
    """Deterministic name from the highest-priority identifier"""
    if identifiers.wallet_address:
        return f"User_{identifiers.wallet_address[-6:]}"
    if identifiers.chat_id is not None:
        return f"Telegram_{identifiers.chat_id}"
    if identifiers.email:
        return identifiers.email.split("@", 1)[0][:100]
    raise ValidationError("At least one identifier is required")


def derive_onboarding_channel(identifiers: Identifiers, requested: Optional[str] = None) -> str:
    if requested:
        valid = {channel.value for channel in OnboardingChannel}
        if requested not in valid:
            raise ValidationError(f"Unknown onboarding channel: {requested}")
        return requested
    if identifiers.chat_id is not None:
        return OnboardingChannel.TELEGRAM.value
    if identifiers.wallet_address:
        return OnboardingChannel.WALLET.value
    return OnboardingChannel.WEB.value


class IdentityResolverService:
    """Resolve, create and look up users by their external identifiers"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def resolve(
        self,
        identifiers: Union[Identifiers, Mapping[str, Any]],
        profile: Optional[UserProfile] = None,
    ) -> User:
        resolution = await self.resolve_identity(identifiers, profile)
        return resolution.user

    async def resolve_identity(
        self,
        identifiers: Union[Identifiers, Mapping[str, Any]],
        profile: Optional[UserProfile] = None,
    ) -> IdentityResolution:
        """
        Resolve identifiers to one user, creating it if nobody matches.

        Raises:
            ValidationError: no identifier supplied or one is malformed
            IdentityConflictError: identifiers belong to different users, or a
                supplied identifier contradicts the one stored on the match
        """
        ids = coerce_identifiers(identifiers)
        profile = profile or UserProfile()

        try:
            return await self._resolve_once(ids, profile)
        except IntegrityError:
            # Another request created a user with one of these identifiers first
            logger.info(f"IDENTITY_CREATE_RACE: retrying resolution for {ids.present()}")

        try:
            return await self._resolve_once(ids, profile)
        except IntegrityError as e:
            raise IdentityConflictError(f"Could not create a user for {ids.present()}: {e.orig}")

    async def find_user(self, identifiers: Union[Identifiers, Mapping[str, Any]]) -> Optional[User]:
        """Lookup without creating anything"""
        ids = coerce_identifiers(identifiers)
        async with get_async_session(self.session_factory) as session:
            matches = await self._find_matches(session, ids)
        self._ensure_single(ids, matches)
        return matches[0] if matches else None

    async def get_user(self, user_id: int) -> User:
        async with get_async_session(self.session_factory) as session:
            user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", user_message="User not found.")
        return user

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_once(self, ids: Identifiers, profile: UserProfile) -> IdentityResolution:
        async with get_async_session(self.session_factory) as session:
            matches = await self._find_matches(session, ids)
            self._ensure_single(ids, matches)

            if not matches:
                user = await self._create_user(session, ids, profile)
                return IdentityResolution(user=user, created=True)

            user = matches[0]
            backfilled = await self._backfill(session, user, ids)
            if backfilled:
                await session.refresh(user)
            return IdentityResolution(user=user, created=False, backfilled_fields=backfilled)

    @staticmethod
    async def _find_matches(session: AsyncSession, ids: Identifiers) -> List[User]:
        """Distinct users matched by any identifier, in priority order"""
        matches: List[User] = []
        for name, value in ids.present():
            result = await session.execute(select(User).where(getattr(User, name) == value))
            user = result.scalar_one_or_none()
            if user is not None and all(user.id != seen.id for seen in matches):
                matches.append(user)
        return matches

    @staticmethod
    def _ensure_single(ids: Identifiers, matches: List[User]) -> None:
        if len(matches) > 1:
            user_ids = [user.id for user in matches]
            logger.warning(f"⚠️ IDENTITY_CONFLICT: {ids.present()} resolve to users {user_ids}")
            raise IdentityConflictError(f"Identifiers {ids.present()} resolve to different users {user_ids}")

    @staticmethod
    async def _create_user(session: AsyncSession, ids: Identifiers, profile: UserProfile) -> User:
        display_name = (profile.display_name or "").strip()[:100] or default_display_name(ids)
        user = User(
            wallet_address=ids.wallet_address,
            chat_id=ids.chat_id,
            email=ids.email,
            display_name=display_name,
            onboarding_channel=derive_onboarding_channel(ids, profile.onboarding_channel),
            # Proving control of a wallet is the verification step
            is_verified=ids.wallet_address is not None,
        )
        session.add(user)
        await session.flush()
        logger.info(
            f"👤 USER_CREATED: id={user.id} channel={user.onboarding_channel} "
            f"identifiers={[name for name, _ in ids.present()]}"
        )
        return user

    @staticmethod
    async def _backfill(session: AsyncSession, user: User, ids: Identifiers) -> List[str]:
        """Attach supplied identifiers the matched user does not have yet"""
        backfilled: List[str] = []
        for name, value in ids.present():
            stored = getattr(user, name)
            if stored == value:
                continue
            if stored is not None:
                logger.warning(f"⚠️ IDENTITY_CONFLICT: user {user.id} has {name}={stored!r}, got {value!r}")
                raise IdentityConflictError(f"User {user.id} already has a different {name}")

            column = getattr(User, name)
            try:
                result = await session.execute(
                    update(User)
                    .where(User.id == user.id, column.is_(None))
                    .values({name: value, "updated_at": utc_now()})
                    .returning(column)
                    .execution_options(synchronize_session=False)
                )
                written = result.scalar_one_or_none()
            except IntegrityError as e:
                logger.warning(f"⚠️ IDENTITY_CONFLICT: {name}={value!r} already belongs to another user")
                raise IdentityConflictError(f"{name} {value!r} already belongs to another user: {e.orig}")

            if written is None:
                # Filled concurrently; only a different value is a conflict
                current = (
                    await session.execute(select(column).where(User.id == user.id))
                ).scalar_one_or_none()
                if current != value:
                    raise IdentityConflictError(f"User {user.id} already has a different {name}")
                continue

            backfilled.append(name)
            logger.info(f"🔗 IDENTITY_BACKFILL: user={user.id} added {name}")
        return backfilled
