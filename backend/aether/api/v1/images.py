import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from aether.api.deps import get_services
from aether.api.v1.auth import get_current_user
from aether.models import User
from aether.schemas import AIImageResponse
from aether.services import Services

router = APIRouter()


@router.get("", response_model=list[AIImageResponse])
async def list_images(
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    """Generated images of the caller, newest first."""
    return await services.store.list_ai_images(current_user.id)


@router.delete("/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_image(
    image_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    await services.store.delete_ai_image(image_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
