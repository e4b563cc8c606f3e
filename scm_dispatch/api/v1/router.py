from fastapi import APIRouter

from scm_dispatch.api.v1.endpoints import (
    assignments,
    carriers,
    shipping,
    jobs,
)


api_router = APIRouter(prefix="/api/v1")

# Carrier Assignment
api_router.include_router(
    assignments.router,
    tags=["Carrier Assignment"]
)

# Carriers
api_router.include_router(
    carriers.router,
    prefix="/carriers",
    tags=["Carriers"]
)

# Shipping Quotes
api_router.include_router(
    shipping.router,
    tags=["Shipping"]
)

# Background Jobs
api_router.include_router(
    jobs.router,
    prefix="/jobs",
    tags=["Jobs"]
)
