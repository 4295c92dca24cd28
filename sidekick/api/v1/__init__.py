"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import rewards, jobs, transactions

api_router = APIRouter()

# rewards routes carry their full paths (/erc20/..., /jobs/erc20/...)
api_router.include_router(
    rewards.router,
    tags=["rewards"]
)

api_router.include_router(
    jobs.router,
    prefix="/jobs",
    tags=["jobs"]
)

api_router.include_router(
    transactions.router,
    prefix="/transactions",
    tags=["transactions"]
)
