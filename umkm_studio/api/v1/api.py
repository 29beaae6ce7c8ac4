"""API v1 router aggregation."""

from fastapi import APIRouter

from umkm_studio.api.v1.routers import auth, coupons, credits, jobs, payments, referrals, websocket

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(auth.router)  # Authentication endpoints
api_router.include_router(credits.router)  # Balance, admission control, refunds
api_router.include_router(coupons.router)
api_router.include_router(referrals.router)
api_router.include_router(payments.router)  # Pakasir purchases and webhook
api_router.include_router(jobs.router)  # ARQ-based generation jobs
api_router.include_router(websocket.router)  # WebSocket for realtime job status
