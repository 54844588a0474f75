"""
API v1 Router Module - Panel Pipeline

All v1 endpoints are prefixed with /api/v1/

- /api/v1/panels/* - Split a composite and enhance its panels
- /api/v1/jobs/* - Composed target + reference job queue
- /api/v1/chain/* - Sequential edit chain
- /api/v1/credentials - Session API key
- /api/v1/metrics - Prometheus scrape endpoint
"""

from fastapi import APIRouter

from ungrid.api.v1.panels import router as panels_router
from ungrid.api.v1.jobs import router as jobs_router
from ungrid.api.v1.chain import router as chain_router
from ungrid.api.v1.credentials import router as credentials_router
from ungrid.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(panels_router, prefix="/panels", tags=["panels"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_v1_router.include_router(chain_router, prefix="/chain", tags=["chain"])
api_v1_router.include_router(credentials_router, prefix="/credentials", tags=["credentials"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
