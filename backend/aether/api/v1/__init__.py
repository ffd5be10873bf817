from fastapi import APIRouter
from aether.api.v1 import auth, chats, messages, research, api_keys, limits, images

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(chats.router, prefix="/chats", tags=["chats"])
router.include_router(messages.router, prefix="/messages", tags=["messages"])
router.include_router(research.router, prefix="/research", tags=["research"])
router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
router.include_router(limits.router, prefix="/limits", tags=["limits"])
router.include_router(images.router, prefix="/images", tags=["images"])
