"""
API router assembly.
"""

from fastapi import APIRouter

from agent_backport.api.v1.endpoints import jobs

# Endpoints manage their own auth
api_router = APIRouter()
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
