"""
FastAPI dependencies for shared resources.
"""

import logging

from entities.workflow import InsightServices
from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def get_services(request: Request) -> InsightServices:
    """
    Get the insight services from app state.

    Raises HTTPException 503 if not initialized.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Insight services not initialized")
    return services

