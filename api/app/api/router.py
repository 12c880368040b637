from fastapi import APIRouter

from app.api.routes import admin, health, jobs, repositories, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(repositories.router, prefix="/repositories", tags=["jobs"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["worker"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
