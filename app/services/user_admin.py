"""
Account administration: role membership and soft delete / restore.

Every mutation runs in the transaction manager with a guarded update of the
account's concurrency stamp, so concurrent admin edits of one account retry
instead of clobbering each other. The role cache is invalidated and the audit
event written only after the change has committed.
"""

from datetime import datetime

import redis.asyncio as redis
from fastapi import status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AuthErrorCode, RoleName, SecurityEventType
from app.core.errors import ConflictError, NotFoundError, ServiceError
from app.core.logging import get_logger
from app.core.role_cache import invalidate_user_roles
from app.core.transaction import CONFLICT, ConcurrencyConflict, TransactionManager, guarded_stamp_update
from app.models.permissions import Roles, UserRoles
from app.models.user import Users
from app.services import security_audit, token_service

logger = get_logger(__name__)


def _validate_role_name(role_name: str) -> str:
    for known in RoleName.ALL:
        if known.lower() == role_name.strip().lower():
            return known
    raise ServiceError(
        f"Unknown role: {role_name}",
        code=AuthErrorCode.INVALID_ROLE,
        status_code=status.HTTP_400_BAD_REQUEST,
    )


async def get_or_create_role(db: AsyncSession, role_name: str) -> Roles:
    """Roles rows are created on first use."""
    result = await db.execute(select(Roles).where(Roles.name == role_name))  # type: ignore[arg-type]
    role = result.scalar_one_or_none()
    if role is None:
        role = Roles(name=role_name)
        db.add(role)
        await db.flush()
    return role


async def _load_user(db: AsyncSession, user_id: int, *, include_deleted: bool = False) -> Users:
    user = await db.get(Users, user_id)
    if user is None or (user.is_deleted and not include_deleted):
        raise NotFoundError("User not found")
    return user


async def _has_role(db: AsyncSession, user_id: int, role_id: int | None) -> bool:
    result = await db.execute(
        select(UserRoles)
        .where(UserRoles.user_id == user_id)  # type: ignore[arg-type]
        .where(UserRoles.role_id == role_id)  # type: ignore[arg-type]
    )
    return result.scalar_one_or_none() is not None


async def _after_commit(
    db: AsyncSession,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    event_type: str,
    user: Users,
    *,
    actor_id: int | None,
    details: str | None,
    now: datetime,
    client_ip: str | None,
) -> None:
    if user.user_id is not None:
        await invalidate_user_roles(redis_client, user.user_id)
    await security_audit.log_event(
        db,
        event_type,
        now=now,
        user_id=user.user_id,
        username=user.username,
        details=f"{details}; by user {actor_id}" if details else f"by user {actor_id}",
        ip_address=client_ip,
    )
    await db.commit()


async def add_role(
    transactions: TransactionManager,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    db: AsyncSession,
    *,
    user_id: int,
    role_name: str,
    actor_id: int | None,
    now: datetime,
    client_ip: str | None = None,
) -> Users:
    """
    Grant a role.

    Raises:
        ServiceError: INVALID_ROLE
        NotFoundError: USER_NOT_FOUND
        ConflictError: ROLE_ALREADY_ASSIGNED
        ConcurrencyConflictError: Retries exhausted
    """
    role_name = _validate_role_name(role_name)

    async def operation(session: AsyncSession, state: None) -> Users | ConcurrencyConflict:
        user = await _load_user(session, user_id)
        role = await get_or_create_role(session, role_name)
        if await _has_role(session, user_id, role.role_id):
            raise ConflictError(
                f"User already has role {role_name}",
                code=AuthErrorCode.ROLE_ALREADY_ASSIGNED,
            )
        if not await guarded_stamp_update(session, user):
            return CONFLICT
        if role.role_id is None:
            raise ValueError("Role ID cannot be None")
        session.add(UserRoles(user_id=user_id, role_id=role.role_id))
        return user

    user = await transactions.execute_in_transaction(operation)
    logger.info("role_added", user_id=user_id, role=role_name, actor_id=actor_id)
    await _after_commit(
        db,
        redis_client,
        SecurityEventType.ROLE_ADDED,
        user,
        actor_id=actor_id,
        details=role_name,
        now=now,
        client_ip=client_ip,
    )
    return user


async def remove_role(
    transactions: TransactionManager,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    db: AsyncSession,
    *,
    user_id: int,
    role_name: str,
    actor_id: int | None,
    now: datetime,
    client_ip: str | None = None,
) -> Users:
    """
    Revoke a role.

    Raises:
        ServiceError: INVALID_ROLE
        NotFoundError: USER_NOT_FOUND
        ConflictError: ROLE_NOT_ASSIGNED
        ConcurrencyConflictError: Retries exhausted
    """
    role_name = _validate_role_name(role_name)

    async def operation(session: AsyncSession, state: None) -> Users | ConcurrencyConflict:
        user = await _load_user(session, user_id)
        result = await session.execute(select(Roles).where(Roles.name == role_name))  # type: ignore[arg-type]
        role = result.scalar_one_or_none()
        if role is None or not await _has_role(session, user_id, role.role_id):
            raise ConflictError(
                f"User does not have role {role_name}",
                code=AuthErrorCode.ROLE_NOT_ASSIGNED,
            )
        if not await guarded_stamp_update(session, user):
            return CONFLICT
        await session.execute(
            delete(UserRoles)
            .where(UserRoles.user_id == user_id)  # type: ignore[arg-type]
            .where(UserRoles.role_id == role.role_id)  # type: ignore[arg-type]
        )
        return user

    user = await transactions.execute_in_transaction(operation)
    logger.info("role_removed", user_id=user_id, role=role_name, actor_id=actor_id)
    await _after_commit(
        db,
        redis_client,
        SecurityEventType.ROLE_REMOVED,
        user,
        actor_id=actor_id,
        details=role_name,
        now=now,
        client_ip=client_ip,
    )
    return user


async def soft_delete_user(
    transactions: TransactionManager,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    db: AsyncSession,
    *,
    user_id: int,
    actor_id: int | None,
    now: datetime,
    client_ip: str | None = None,
) -> Users:
    """
    Soft-delete an account and end all of its sessions.

    Raises:
        NotFoundError: USER_NOT_FOUND (also for an already deleted account)
        ConcurrencyConflictError: Retries exhausted
    """

    async def operation(session: AsyncSession, state: None) -> Users | ConcurrencyConflict:
        user = await _load_user(session, user_id)
        if not await guarded_stamp_update(
            session, user, is_deleted=True, deleted_at=now, deleted_by=actor_id
        ):
            return CONFLICT
        await token_service.revoke_all_user_tokens(session, user_id, now)
        return user

    user = await transactions.execute_in_transaction(operation)
    logger.info("user_soft_deleted", user_id=user_id, actor_id=actor_id)
    await _after_commit(
        db,
        redis_client,
        SecurityEventType.ACCOUNT_DELETED,
        user,
        actor_id=actor_id,
        details=None,
        now=now,
        client_ip=client_ip,
    )
    return user


async def restore_user(
    transactions: TransactionManager,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    db: AsyncSession,
    *,
    user_id: int,
    actor_id: int | None,
    now: datetime,
    client_ip: str | None = None,
) -> Users:
    """
    Undo a soft delete. Restoring an account that is not deleted is a no-op.

    Raises:
        NotFoundError: USER_NOT_FOUND
        ConcurrencyConflictError: Retries exhausted
    """

    async def operation(session: AsyncSession, state: None) -> Users | None | ConcurrencyConflict:
        user = await _load_user(session, user_id, include_deleted=True)
        if not user.is_deleted:
            return None
        if not await guarded_stamp_update(
            session, user, is_deleted=False, deleted_at=None, deleted_by=None
        ):
            return CONFLICT
        return user

    restored = await transactions.execute_in_transaction(operation)
    if restored is None:
        return await _load_user(db, user_id)

    logger.info("user_restored", user_id=user_id, actor_id=actor_id)
    await _after_commit(
        db,
        redis_client,
        SecurityEventType.ACCOUNT_RESTORED,
        restored,
        actor_id=actor_id,
        details=None,
        now=now,
        client_ip=client_ip,
    )
    return restored
