from typing import Annotated

from fastapi import APIRouter, Depends

from aether.api.deps import get_services
from aether.api.v1.auth import get_current_user
from aether.models import User
from aether.schemas import UsageStatusResponse
from aether.services import ChatService, Services

router = APIRouter()


@router.get("/status", response_model=UsageStatusResponse)
async def get_limit_status(
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    """Current message allowance for the caller. Does not consume a slot."""
    result = await services.admission.get_status(ChatService.subject_key(current_user), current_user.role)
    return UsageStatusResponse(
        role=result.role,
        allowed=result.allowed,
        remaining=result.remaining,
        limit=result.limit,
    )
