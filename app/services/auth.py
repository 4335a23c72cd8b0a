import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.core.database as db_module
from app.core.database import ApiKey, User
from app.core.exceptions import NotFoundError, ValidationError
from app.core.security import API_KEY_PREFIX, generate_api_key, get_key_prefix, hash_api_key


class AuthService:
    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory_override = session_factory

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def create_user(self, name: str, email: str) -> User:
        email = email.strip().lower()
        async with self._session_factory() as session:
            existing = await session.execute(select(User).where(User.email == email))
            if existing.scalar_one_or_none() is not None:
                raise ValidationError(f"A user with email '{email}' already exists.")
            user = User(id=str(uuid.uuid4()), name=name, email=email)
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    async def get_user_by_email(self, email: str) -> User | None:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.email == email.strip().lower()))
            return result.scalar_one_or_none()

    async def create_key(self, user_id: str, label: str, notes: str | None = None) -> tuple[str, ApiKey]:
        """Create a new API key for a user. Returns (raw_key, key_row). The raw key is only available at creation time."""
        raw_key = generate_api_key()
        async with self._session_factory() as session:
            if await session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found.")
            key_row = ApiKey(
                key_hash=hash_api_key(raw_key),
                key_prefix=get_key_prefix(raw_key),
                label=label,
                user_id=user_id,
                notes=notes,
                is_active=True,
            )
            session.add(key_row)
            await session.commit()
            await session.refresh(key_row)
        return raw_key, key_row

    async def list_keys(self, user_id: str | None = None) -> list[ApiKey]:
        """List active API keys, optionally for one user (never returns the hash directly -- only prefix)."""
        stmt = select(ApiKey).where(ApiKey.is_active == True)
        if user_id is not None:
            stmt = stmt.where(ApiKey.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(ApiKey.created_at.desc()))
            return list(result.scalars().all())

    async def revoke_key(self, key_identifier: str) -> bool:
        """Revoke a key by prefix or full key. Returns True if found and revoked."""
        async with self._session_factory() as session:
            if key_identifier.startswith(API_KEY_PREFIX) and len(key_identifier) > 20:
                # Full key -- hash and look up
                key_hash = hash_api_key(key_identifier)
                result = await session.execute(
                    select(ApiKey).where(ApiKey.key_hash == key_hash, ApiKey.is_active == True)
                )
            else:
                # Prefix match
                result = await session.execute(
                    select(ApiKey).where(ApiKey.key_prefix == key_identifier, ApiKey.is_active == True)
                )

            key_row = result.scalars().first()
            if key_row is None:
                return False

            key_row.is_active = False
            await session.commit()
            return True

    async def validate_key(self, raw_key: str) -> ApiKey | None:
        """Validate a raw API key. Returns the key row if valid, None otherwise."""
        key_hash = hash_api_key(raw_key)
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiKey).where(ApiKey.key_hash == key_hash, ApiKey.is_active == True)
            )
            return result.scalar_one_or_none()
