import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from aether.api.deps import get_services
from aether.api.v1.auth import get_current_user
from aether.core.encryption import mask_api_key
from aether.models import ApiKey, User
from aether.schemas import ApiKeyCreate, ApiKeyResponse
from aether.services import Services

router = APIRouter()


def _to_response(record: ApiKey, plaintext: str) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=record.id,
        service=record.service,
        name=record.name,
        masked_key=mask_api_key(plaintext),
        is_default=record.is_default,
        created_at=record.created_at,
    )


@router.get("", response_model=list[ApiKeyResponse])
async def list_api_keys(
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    keys = await services.credentials.list_keys(current_user.id)
    return [_to_response(record, plaintext) for record, plaintext in keys]


@router.post("", response_model=ApiKeyResponse, status_code=status.HTTP_201_CREATED)
async def save_api_key(
    key_data: ApiKeyCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    record = await services.credentials.save_key(
        current_user.id, key_data.service, key_data.name.strip(), key_data.key.strip()
    )
    return _to_response(record, key_data.key.strip())


@router.post("/{key_id}/default", response_model=ApiKeyResponse)
async def set_default_api_key(
    key_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    record = await services.credentials.set_default(current_user.id, key_id)
    keys = {r.id: plaintext for r, plaintext in await services.credentials.list_keys(current_user.id)}
    return _to_response(record, keys.get(record.id, ""))


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_api_key(
    key_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    await services.credentials.delete_key(current_user.id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
