from fastapi import APIRouter
from app.api.v1.endpoints import inbound_shipments

api_router = APIRouter()

# Registering specialized controllers
api_router.include_router(inbound_shipments.router, prefix="/shipments", tags=["Inbound"])
