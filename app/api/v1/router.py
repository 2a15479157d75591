"""API v1 router configuration."""

from fastapi import APIRouter

from app.api.v1.endpoints import appointments, health, mpesa

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(mpesa.router, prefix="/mpesa", tags=["M-Pesa"])
