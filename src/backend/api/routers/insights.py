"""
Insight API routes.

Every question goes through the three-mode orchestrator, which answers
with one of five outcomes (template, direct, funnel, clarification,
error). Outcomes are returned as JSON with their ``mode`` discriminator
so clients can switch on it.
"""

import logging
from typing import Any

from api.dependencies import get_services
from api.models import AskRequest, ClarifiedAskRequest, ClassifyRequest, RefineRequest
from entities.workflow import InsightServices
from fastapi import APIRouter, Depends
from models import ClassificationOptions, ClassificationResult, RefinementResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/insights", tags=["insights"])


@router.post("/ask")
async def ask(
    body: AskRequest, services: InsightServices = Depends(get_services)
) -> dict[str, Any]:
    """
    Resolve a question into SQL, a funnel or a clarification request.
    """
    result = await services.orchestrator.ask(body.question, body.scope_id, body.model_id)
    return result.model_dump(mode="json")


@router.post("/ask-with-clarifications")
async def ask_with_clarifications(
    body: ClarifiedAskRequest, services: InsightServices = Depends(get_services)
) -> dict[str, Any]:
    """
    Resume a question with the user's answers to an earlier clarification.
    """
    result = await services.orchestrator.ask_with_clarifications(
        body.question, body.scope_id, body.clarifications, body.model_id
    )
    return result.model_dump(mode="json")


@router.post("/classify", response_model=ClassificationResult)
async def classify(
    body: ClassifyRequest, services: InsightServices = Depends(get_services)
) -> ClassificationResult:
    """Classify a question's intent without resolving it."""
    return await services.classifier.classify(
        body.question,
        body.scope_id,
        ClassificationOptions(model_id=body.model_id, enable_cache=body.enable_cache),
    )


@router.post("/refine", response_model=RefinementResult)
async def refine(
    body: RefineRequest, services: InsightServices = Depends(get_services)
) -> RefinementResult:
    """
    Apply a free-text refinement ("last 6 months only") to generated SQL.
    """
    return await services.refiner.refine(
        body.scope_id,
        body.question,
        body.current_sql,
        body.refinement_request,
        body.context,
        model_id=body.model_id,
    )
