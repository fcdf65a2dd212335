from fastapi import APIRouter
from app.modules.queues.router import router as queues_router

api_router = APIRouter()
api_router.include_router(queues_router, tags=["queues"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
