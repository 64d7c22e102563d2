"""API routes."""

from fastapi import APIRouter

from docflow.api.routes import derivations

api_router = APIRouter()

api_router.include_router(derivations.router, prefix="/derivations", tags=["derivations"])
