import uuid
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, status

from aether.api.deps import get_chat_service
from aether.api.v1.auth import get_current_user
from aether.models import User
from aether.schemas import EditMessageRequest, MessageResponse, SendMessageResponse
from aether.services import ChatService, run_generation_task

router = APIRouter()


@router.patch("/{message_id}", response_model=SendMessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def edit_message(
    message_id: uuid.UUID,
    edit_data: EditMessageRequest,
    background_tasks: BackgroundTasks,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    """Rewrite a user message and regenerate the reply after it."""
    job = await chats.prepare_edit(
        current_user, message_id, edit_data.content.strip(), edit_data.model_id, edit_data.web_search
    )
    background_tasks.add_task(run_generation_task, chats, job)
    return SendMessageResponse(
        chat_id=job.chat_id,
        user_message_id=job.user_message_id,
        assistant_message_id=job.assistant_message_id,
        remaining=job.remaining,
    )


@router.post("/{message_id}/cancel", response_model=MessageResponse)
async def cancel_message(
    message_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.cancel_message(current_user, message_id)
