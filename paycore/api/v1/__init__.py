"""API v1 роутеры."""
from fastapi import APIRouter

from paycore.api.v1 import payments

router = APIRouter()

router.include_router(payments.router, prefix="/payments", tags=["payments"])
