from fastapi import APIRouter

from submission_monitor.api.routes import admin, health, submissions

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(submissions.router, prefix="/submissions", tags=["submissions"])
api_router.include_router(admin.router, tags=["admin"])
