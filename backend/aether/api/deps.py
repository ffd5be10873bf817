from typing import Annotated

from fastapi import Depends, Request

from aether.services import ChatService, Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_chat_service(services: Annotated[Services, Depends(get_services)]) -> ChatService:
    return services.chat
