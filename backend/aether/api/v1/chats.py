import uuid
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status

from aether.api.deps import get_chat_service
from aether.api.v1.auth import get_current_user
from aether.models import User
from aether.schemas import (
    BranchRequest,
    ChatCreate,
    ChatRename,
    ChatResponse,
    MessageResponse,
    RetryRequest,
    SendMessageRequest,
    SendMessageResponse,
    SharedChatResponse,
)
from aether.services import ChatService, run_generation_task

router = APIRouter()


@router.post("", response_model=ChatResponse, status_code=status.HTTP_201_CREATED)
async def create_chat(
    chat_data: ChatCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.create_chat(current_user, chat_data.title)


@router.get("", response_model=list[ChatResponse])
async def list_chats(
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
    search: str | None = Query(default=None, max_length=200, description="Case-insensitive title filter"),
):
    return await chats.search_chats(current_user, search)


@router.delete("")
async def delete_unpinned_chats(
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    """Delete every chat of the caller that is not pinned."""
    deleted = await chats.delete_unpinned_chats(current_user)
    return {"deleted": deleted}


@router.get("/shared/{share_id}", response_model=SharedChatResponse)
async def get_shared_chat(
    share_id: str,
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    chat = await chats.store.get_shared_chat(share_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shared chat not found")
    messages = await chats.store.get_messages_for_chat(chat.id, complete_only=True)
    return SharedChatResponse(
        chat=ChatResponse.model_validate(chat),
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


@router.get("/{chat_id}", response_model=ChatResponse)
async def get_chat(
    chat_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.get_chat(current_user, chat_id)


@router.patch("/{chat_id}", response_model=ChatResponse)
async def rename_chat(
    chat_id: uuid.UUID,
    chat_data: ChatRename,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.rename_chat(current_user, chat_id, chat_data.title)


@router.post("/{chat_id}/pin", response_model=ChatResponse)
async def toggle_pin(
    chat_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.toggle_pin(current_user, chat_id)


@router.post("/{chat_id}/share", response_model=ChatResponse)
async def share_chat(
    chat_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.share_chat(current_user, chat_id)


@router.post("/{chat_id}/branch", response_model=ChatResponse, status_code=status.HTTP_201_CREATED)
async def branch_chat(
    chat_id: uuid.UUID,
    branch_data: BranchRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.branch_chat(current_user, chat_id, branch_data.message_id)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    await chats.delete_chat(current_user, chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{chat_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    chat_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    return await chats.list_messages(current_user, chat_id)


@router.post("/{chat_id}/messages", response_model=SendMessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    chat_id: uuid.UUID,
    message_data: SendMessageRequest,
    background_tasks: BackgroundTasks,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    """Store the user message and stream the reply into its placeholder in the background."""
    job = await chats.prepare_send(
        current_user,
        chat_id,
        message_data.content,
        message_data.model_id,
        attachments=message_data.attachments,
        tool_config=message_data.tool_config,
    )
    background_tasks.add_task(run_generation_task, chats, job)
    return SendMessageResponse(
        chat_id=job.chat_id,
        user_message_id=job.user_message_id,
        assistant_message_id=job.assistant_message_id,
        remaining=job.remaining,
    )


@router.post("/{chat_id}/retry", response_model=SendMessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_message(
    chat_id: uuid.UUID,
    retry_data: RetryRequest,
    background_tasks: BackgroundTasks,
    current_user: Annotated[User, Depends(get_current_user)],
    chats: Annotated[ChatService, Depends(get_chat_service)],
):
    job = await chats.prepare_retry(
        current_user, chat_id, retry_data.message_id, retry_data.model_id, retry_data.web_search
    )
    background_tasks.add_task(run_generation_task, chats, job)
    return SendMessageResponse(
        chat_id=job.chat_id,
        assistant_message_id=job.assistant_message_id,
        remaining=job.remaining,
    )
