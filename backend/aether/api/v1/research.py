import uuid
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, status

from aether.api.deps import get_services
from aether.api.v1.auth import get_current_user
from aether.core.exceptions import ResearchSessionNotFound
from aether.models import User
from aether.schemas import ResearchCreate, ResearchSessionResponse
from aether.services import Services, run_research_task

router = APIRouter()


@router.post("", response_model=ResearchSessionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_research(
    research_data: ResearchCreate,
    background_tasks: BackgroundTasks,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    session = await services.research.start(current_user.id, research_data.prompt, research_data.thoughts)
    background_tasks.add_task(run_research_task, services.research, session)
    return session


@router.get("", response_model=list[ResearchSessionResponse])
async def list_research_sessions(
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    return await services.store.list_research_sessions(current_user.id)


@router.get("/{session_id}", response_model=ResearchSessionResponse)
async def get_research_session(
    session_id: uuid.UUID,
    current_user: Annotated[User, Depends(get_current_user)],
    services: Annotated[Services, Depends(get_services)],
):
    session = await services.store.get_research_session(session_id)
    if not session or session.user_id != current_user.id:
        raise ResearchSessionNotFound("Research session not found")
    return session
