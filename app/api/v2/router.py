from fastapi import APIRouter
from app.api.v2 import square

api_router = APIRouter()

api_router.include_router(square.router, prefix="/integrations/square", tags=["square"])
