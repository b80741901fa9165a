"""In-memory ``FunnelRepository``.

Funnels are stored as deep copies so callers never share mutable state
with the store; mutations only take effect through ``save_funnel``.
"""

from models import QueryFunnel, SubQuestion


class InMemoryFunnelRepository:
    """Default funnel storage for a single process."""

    def __init__(self) -> None:
        self._funnels: dict[str, QueryFunnel] = {}

    async def save_funnel(self, funnel: QueryFunnel) -> None:
        self._funnels[funnel.id] = funnel.model_copy(deep=True)

    async def get_funnel(self, funnel_id: str) -> QueryFunnel | None:
        funnel = self._funnels.get(funnel_id)
        return funnel.model_copy(deep=True) if funnel else None

    async def list_funnels(self, scope_id: str | None = None) -> list[QueryFunnel]:
        return [
            funnel.model_copy(deep=True)
            for funnel in self._funnels.values()
            if scope_id is None or funnel.scope_id == scope_id
        ]

    async def delete_funnel(self, funnel_id: str) -> bool:
        return self._funnels.pop(funnel_id, None) is not None

    async def find_sub_question(self, sub_question_id: str) -> SubQuestion | None:
        for funnel in self._funnels.values():
            for sub_question in funnel.sub_questions:
                if sub_question.id == sub_question_id:
                    return sub_question.model_copy(deep=True)
        return None
