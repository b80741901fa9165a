"""
Funnel and sub-question API routes.

A funnel is a compound question broken into ordered sub-questions that
are reviewed, edited, generated and executed one at a time.
"""

import logging
from typing import Any

from api.dependencies import get_services
from api.models import (
    AddSubQuestionRequest,
    CreateFunnelRequest,
    GenerateSqlRequest,
    SubQuestionResultResponse,
    UpdateSubQuestionRequest,
)
from entities.funnel import FunnelEngine
from entities.workflow import InsightServices
from fastapi import APIRouter, Depends, HTTPException, Query
from models import QueryFunnel, SubQuestion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["funnels"])


# ---------------------------------------------------------------------------
# Funnels
# ---------------------------------------------------------------------------


@router.post("/funnels", response_model=QueryFunnel, status_code=201)
async def create_funnel(
    body: CreateFunnelRequest, services: InsightServices = Depends(get_services)
) -> QueryFunnel:
    """
    Decompose a question into a funnel.

    An active funnel already created for the same question is returned
    instead of a new one.
    """
    return await services.funnel_engine.decompose(
        body.question, body.scope_id, model_id=body.model_id
    )


@router.get("/funnels", response_model=list[QueryFunnel])
async def list_funnels(
    scope_id: str | None = Query(default=None),
    services: InsightServices = Depends(get_services),
) -> list[QueryFunnel]:
    """List funnels newest first."""
    return await services.funnel_engine.list_funnels(scope_id)


@router.get("/funnels/{funnel_id}", response_model=QueryFunnel)
async def get_funnel(
    funnel_id: str, services: InsightServices = Depends(get_services)
) -> QueryFunnel:
    return await services.funnel_engine.get_funnel(funnel_id)


@router.delete("/funnels/{funnel_id}")
async def delete_funnel(
    funnel_id: str, services: InsightServices = Depends(get_services)
) -> dict[str, bool]:
    """Delete a funnel with its sub-questions and cached results."""
    await services.funnel_engine.delete_funnel(funnel_id)
    return {"success": True}


@router.post("/funnels/{funnel_id}/sub-questions", response_model=SubQuestion, status_code=201)
async def add_sub_question(
    funnel_id: str,
    body: AddSubQuestionRequest,
    services: InsightServices = Depends(get_services),
) -> SubQuestion:
    return await services.funnel_engine.add_sub_question(
        funnel_id,
        body.question_text,
        order=body.order,
        depends_on=body.depends_on,
        sql_query=body.sql_query,
    )


@router.get("/funnels/{funnel_id}/sub-questions", response_model=list[SubQuestion])
async def list_sub_questions(
    funnel_id: str,
    include_inactive: bool = Query(default=False),
    services: InsightServices = Depends(get_services),
) -> list[SubQuestion]:
    """Sub-questions of a funnel in order."""
    return await services.funnel_engine.list_sub_questions(funnel_id, include_inactive)


# ---------------------------------------------------------------------------
# Sub-questions
# ---------------------------------------------------------------------------


@router.patch("/sub-questions/{sub_question_id}", response_model=SubQuestion)
async def update_sub_question(
    sub_question_id: str,
    body: UpdateSubQuestionRequest,
    services: InsightServices = Depends(get_services),
) -> SubQuestion:
    """
    Update a sub-question's text, SQL and/or status.

    Status changes follow the sub-question state machine; a disallowed
    transition answers 409.
    """
    engine = services.funnel_engine
    sub_question = await engine.get_sub_question(sub_question_id)
    if body.question_text is not None:
        sub_question = await engine.update_sub_question_text(sub_question_id, body.question_text)
    if body.sql_query is not None:
        sub_question = await engine.update_sub_question_sql(sub_question_id, body.sql_query)
    if body.status is not None:
        sub_question = await engine.set_status(sub_question_id, body.status)
    return sub_question


@router.post("/sub-questions/{sub_question_id}/generate-sql", response_model=SubQuestion)
async def generate_sub_question_sql(
    sub_question_id: str,
    body: GenerateSqlRequest,
    services: InsightServices = Depends(get_services),
) -> SubQuestion:
    """Generate and store SQL for one sub-question, building on earlier steps."""
    return await services.funnel_engine.generate_sub_question_sql(
        sub_question_id, body.scope_id, model_id=body.model_id
    )


@router.post("/sub-questions/{sub_question_id}/execute")
async def execute_sub_question(
    sub_question_id: str, services: InsightServices = Depends(get_services)
) -> dict[str, Any]:
    """
    Execute one sub-question.

    Returns a ``funnel`` outcome pointing at the next open step, or an
    ``error`` outcome with the classified database error.
    """
    result = await services.orchestrator.execute_sub_question(sub_question_id)
    return result.model_dump(mode="json")


@router.get("/sub-questions/{sub_question_id}/result", response_model=SubQuestionResultResponse)
async def get_sub_question_result(
    sub_question_id: str, services: InsightServices = Depends(get_services)
) -> SubQuestionResultResponse:
    """Cached result of a sub-question; 404 when it has not been executed."""
    sub_question = await services.funnel_engine.get_sub_question(sub_question_id)
    if sub_question.result is None:
        raise HTTPException(status_code=404, detail="Sub-question has no result yet")
    return SubQuestionResultResponse(
        sub_question_id=sub_question_id,
        result=sub_question.result,
        is_stale=FunnelEngine.is_result_stale(sub_question),
    )
