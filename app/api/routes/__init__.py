"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.messages import router as messages_router
from app.api.routes.webhooks import router as webhooks_router

router = APIRouter()

router.include_router(messages_router, prefix="/messages", tags=["messages"])
router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
