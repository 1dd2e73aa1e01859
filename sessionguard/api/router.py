"""SessionGuard API Router - aggregates all API routes."""

from fastapi import APIRouter

from sessionguard.api import auth, security

# Auth routes live under /auth; health is mounted separately at the root
api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(security.router)
