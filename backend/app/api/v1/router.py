"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import guardian, trusted_contacts

router = APIRouter()

# Guardian Mode trips
router.include_router(guardian.router)

# Trusted contact address book
router.include_router(trusted_contacts.router)
