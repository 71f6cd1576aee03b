from fastapi import APIRouter
from taskinn.api.v1.endpoints import wallets, payments, admin

api_router = APIRouter()

api_router.include_router(wallets.router, prefix="/wallets", tags=["wallets"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
