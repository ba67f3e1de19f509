"""
User administration endpoints (Admin role required).

- Grant / revoke roles
- Soft delete / restore accounts
"""

from fastapi import APIRouter

from app.core.auth import AdminUser, ClientIp, ClockDep, DbSession, RedisDep, TransactionsDep
from app.core.role_cache import get_user_roles
from app.schemas.user import UserResponse, UserRolesResponse
from app.services import user_admin

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/{user_id}/roles/{role_name}", response_model=UserRolesResponse)
async def add_user_role(
    user_id: int,
    role_name: str,
    admin: AdminUser,
    transactions: TransactionsDep,
    redis_client: RedisDep,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> UserRolesResponse:
    await user_admin.add_role(
        transactions,
        redis_client,
        db,
        user_id=user_id,
        role_name=role_name,
        actor_id=admin.user_id,
        now=clock.now(),
        client_ip=client_ip,
    )
    roles = await get_user_roles(db, user_id)
    return UserRolesResponse(user_id=user_id, roles=sorted(roles))


@router.delete("/{user_id}/roles/{role_name}", response_model=UserRolesResponse)
async def remove_user_role(
    user_id: int,
    role_name: str,
    admin: AdminUser,
    transactions: TransactionsDep,
    redis_client: RedisDep,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> UserRolesResponse:
    await user_admin.remove_role(
        transactions,
        redis_client,
        db,
        user_id=user_id,
        role_name=role_name,
        actor_id=admin.user_id,
        now=clock.now(),
        client_ip=client_ip,
    )
    roles = await get_user_roles(db, user_id)
    return UserRolesResponse(user_id=user_id, roles=sorted(roles))


@router.delete("/{user_id}", response_model=UserResponse)
async def delete_user(
    user_id: int,
    admin: AdminUser,
    transactions: TransactionsDep,
    redis_client: RedisDep,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> UserResponse:
    """Soft-delete an account. Its sessions are revoked."""
    user = await user_admin.soft_delete_user(
        transactions,
        redis_client,
        db,
        user_id=user_id,
        actor_id=admin.user_id,
        now=clock.now(),
        client_ip=client_ip,
    )
    return UserResponse.model_validate(user)


@router.post("/{user_id}/restore", response_model=UserResponse)
async def restore_user(
    user_id: int,
    admin: AdminUser,
    transactions: TransactionsDep,
    redis_client: RedisDep,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> UserResponse:
    user = await user_admin.restore_user(
        transactions,
        redis_client,
        db,
        user_id=user_id,
        actor_id=admin.user_id,
        now=clock.now(),
        client_ip=client_ip,
    )
    return UserResponse.model_validate(user)
