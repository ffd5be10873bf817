import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from aether.api.deps import get_services
from aether.models import User
from aether.schemas import GuestMigrationRequest, GuestMigrationResponse, UserPreferences, UserResponse
from aether.services import Services

router = APIRouter()


async def get_current_user(
    services: Annotated[Services, Depends(get_services)],
    x_user_id: Annotated[str | None, Header()] = None,
    x_anon_key: Annotated[str | None, Header()] = None,
) -> User:
    """Resolve the caller from the identity headers set by the gateway."""
    if x_user_id:
        try:
            user_uuid = uuid.UUID(x_user_id)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id")
        user = await services.users.get_user(user_uuid)
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
        return user

    anon_key = (x_anon_key or "").strip()
    if anon_key:
        return await services.users.get_or_create_guest(anon_key)

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: Annotated[User, Depends(get_current_user)]):
    return current_user


@router.patch("/me/preferences", response_model=UserResponse)
async def update_preferences(
    preferences: UserPreferences,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    return await services.users.update_preferences(current_user.id, preferences.model_dump())


@router.post("/me/migrate-guest", response_model=GuestMigrationResponse)
async def migrate_guest_chats(
    migration: GuestMigrationRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    """Move the chats created under an anonymous key to the signed-in caller."""
    guest = await services.users.find_guest(migration.anon_key.strip())
    migrated = await services.chat.migrate_guest_chats(current_user, guest)
    return GuestMigrationResponse(migrated=migrated)
