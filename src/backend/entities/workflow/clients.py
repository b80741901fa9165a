"""Core client container and Protocol adapters for dependency injection.

``CoreClients`` bundles every I/O dependency the insight core needs.
Production code constructs it via ``create_core_clients()`` from real
Azure clients; tests construct it from in-memory fakes.

Protocol adapters (``AgentFrameworkModelRouter``, ``JsonTemplateCatalog``,
``KeywordMetadataProvider``, ``SqlExecutorAdapter``) wrap Azure clients
and bundled catalog files so they satisfy the ``Protocol`` interfaces.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_framework import ChatAgent
from agent_framework_azure_ai import AzureAIClient
from azure.identity.aio import DefaultAzureCredential
from config.settings import Settings
from entities.funnel import InMemoryFunnelRepository
from entities.query_builder import ModelSqlGenerator
from entities.shared.protocols import (
    AuditSink,
    FunnelRepository,
    ModelRouter,
    SemanticMetadataProvider,
    SqlExecutor,
    SqlGenerator,
    TemplateCatalog,
)
from models import (
    ClassificationResult,
    FieldBinding,
    JoinPath,
    QueryTemplate,
    SemanticContext,
    TermBinding,
    TimeRange,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config loaders
# ---------------------------------------------------------------------------

_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
DEFAULT_TEMPLATES_PATH = _CONFIG_DIR / "templates.json"
DEFAULT_SEMANTIC_MODEL_PATH = _CONFIG_DIR / "semantic_model.json"


def load_json_file(path: Path) -> Any:
    """Read a bundled JSON config file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed {path.name}: {exc}") from exc


def load_templates(path: Path = DEFAULT_TEMPLATES_PATH) -> list[QueryTemplate]:
    """Load catalog templates, skipping entries that fail validation.

    Raises:
        TypeError: If the file is not a JSON array.
    """
    data = load_json_file(path)
    if not isinstance(data, list):
        raise TypeError(f"{path.name} must contain a JSON array of templates")

    templates: list[QueryTemplate] = []
    for item in data:
        try:
            templates.append(QueryTemplate.model_validate(item))
        except Exception:  # noqa: BLE001
            template_id = item.get("id", "?") if isinstance(item, dict) else "?"
            logger.warning("Skipping unparseable template %s", str(template_id)[:100])
    return templates


# ---------------------------------------------------------------------------
# Protocol adapters
# ---------------------------------------------------------------------------


def _response_text(response: Any) -> str:
    """Extract the text of an agent run response."""
    for msg in getattr(response, "messages", []):
        for content in getattr(msg, "contents", []):
            text_value = getattr(content, "text", None)
            if text_value:
                return text_value
    return getattr(response, "text", "") or ""


class AgentFrameworkModelRouter:
    """``ModelRouter`` backed by Agent Framework ``ChatAgent`` runs.

    One ``AzureAIClient`` is created per model deployment and reused.

    Args:
        project_endpoint: Foundry project endpoint URL.
        credential: Async Azure credential.
        default_model: Deployment used when a call names none.
        classifier_model: Deployment returned by ``select_model``.
    """

    def __init__(
        self,
        project_endpoint: str,
        credential: DefaultAzureCredential,
        *,
        default_model: str,
        classifier_model: str | None = None,
    ) -> None:
        if not project_endpoint:
            raise ValueError(
                "AZURE_AI_PROJECT_ENDPOINT environment variable is required. "
                "Set it to your Azure AI Foundry project endpoint."
            )
        self._project_endpoint = project_endpoint
        self._credential = credential
        self._default_model = default_model
        self._classifier_model = classifier_model or default_model
        self._clients: dict[str, AzureAIClient] = {}

    def _client_for(self, model_id: str) -> AzureAIClient:
        client = self._clients.get(model_id)
        if client is None:
            client = AzureAIClient(
                project_endpoint=self._project_endpoint,
                credential=self._credential,
                model_deployment_name=model_id,
                use_latest_version=True,
            )
            self._clients[model_id] = client
        return client

    async def select_model(self, question: str, scope_id: str) -> str:
        return self._classifier_model

    async def complete(
        self,
        system: str,
        user_message: str,
        *,
        model_id: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> str:
        model = model_id or self._default_model
        agent = ChatAgent(
            name="insight-core-agent",
            instructions=system,
            chat_client=self._client_for(model),
        )
        response = await agent.run(user_message, max_tokens=max_tokens, temperature=temperature)
        return _response_text(response)


class JsonTemplateCatalog:
    """``TemplateCatalog`` serving templates loaded from a JSON file.

    Every scope sees the same catalog.
    """

    def __init__(self, templates: list[QueryTemplate]) -> None:
        self._templates = templates

    @classmethod
    def from_path(cls, path: Path = DEFAULT_TEMPLATES_PATH) -> JsonTemplateCatalog:
        templates = load_templates(path)
        logger.info("Loaded %d templates from %s", len(templates), path.name)
        return cls(templates)

    async def list_templates(self, scope_id: str) -> list[QueryTemplate]:
        return [t.model_copy(deep=True) for t in self._templates]


_TIME_RANGE_RE = re.compile(
    r"(?:last|past|previous)\s+(\d+)\s+(day|week|month|quarter|year)s?", re.IGNORECASE
)


def _shared_semantic(candidates: list[FieldBinding]) -> str:
    semantics = {c.semantic for c in candidates}
    return semantics.pop() if len(semantics) == 1 else ""


class KeywordMetadataProvider:
    """``SemanticMetadataProvider`` over a static semantic model.

    The model is a dict with ``forms`` (each with ``name``, ``terms`` and
    ``fields``; each field with ``name``, ``semantic``, ``terms`` and
    optional ``values``) and ``join_paths``. A form is discovered when its
    name or one of its terms appears in the question, a field when one of
    its terms or values does. A term found on several fields becomes an
    ambiguous ``TermBinding``.
    """

    def __init__(self, semantic_model: dict[str, Any]) -> None:
        self._forms: list[dict[str, Any]] = semantic_model.get("forms", [])
        self._join_paths = [
            JoinPath.model_validate(j) for j in semantic_model.get("join_paths", [])
        ]

    @classmethod
    def from_path(cls, path: Path = DEFAULT_SEMANTIC_MODEL_PATH) -> KeywordMetadataProvider:
        data = load_json_file(path)
        if not isinstance(data, dict):
            raise TypeError(f"{path.name} must contain a JSON object")
        return cls(data)

    @staticmethod
    def _mentions(text: str, words: list[str]) -> list[str]:
        found = [w for w in words if re.search(rf"\b{re.escape(w.lower())}", text)]
        return list(dict.fromkeys(found))

    async def discover_context(
        self,
        question: str,
        scope_id: str,
        classification: ClassificationResult,
    ) -> SemanticContext:
        text = question.lower()
        forms: list[str] = []
        fields: list[str] = []
        bindings: dict[str, list[FieldBinding]] = {}

        for form in self._forms:
            name = form["name"]
            short = name.split(".")[-1]
            if self._mentions(text, [short, *form.get("terms", [])]):
                forms.append(name)
            for field in form.get("fields", []):
                for value in self._mentions(text, field.get("values", [])):
                    fields.append(f"{name}.{field['name']}")
                    bindings.setdefault(value, []).append(
                        FieldBinding(
                            form=name,
                            field=field["name"],
                            semantic=field.get("semantic", ""),
                            value=value,
                        )
                    )
                for term in self._mentions(text, field.get("terms", [])):
                    fields.append(f"{name}.{field['name']}")
                    bindings.setdefault(term, []).append(
                        FieldBinding(
                            form=name, field=field["name"], semantic=field.get("semantic", "")
                        )
                    )

        for candidates in bindings.values():
            for binding in candidates:
                if binding.form not in forms:
                    forms.append(binding.form)

        terminology = [
            TermBinding(
                term=term,
                semantic=_shared_semantic(candidates),
                candidates=candidates,
            )
            for term, candidates in bindings.items()
        ]
        join_paths = [j for j in self._join_paths if j.left in forms and j.right in forms]

        time_range = None
        found = _TIME_RANGE_RE.search(question)
        if found:
            time_range = TimeRange(unit=found.group(2).lower(), value=int(found.group(1)))

        logger.info(
            "Discovered %d form(s), %d field(s), %d term(s) for: %s",
            len(forms),
            len(fields),
            len(terminology),
            question[:100],
        )
        return SemanticContext(
            question=question,
            intent=classification.intent,
            forms=forms,
            fields=list(dict.fromkeys(fields)),
            terminology=terminology,
            join_paths=join_paths,
            time_range=time_range,
            confidence=0.8 if forms else 0.3,
        )


class SqlExecutorAdapter:
    """``SqlExecutor`` backed by ``AzureSqlClient``.

    Each ``execute()`` call opens and closes a fresh database connection.

    Args:
        server: Azure SQL server hostname.
        database: Database name.
        client_id: Managed-identity client ID for the access token.
        default_timeout_seconds: Used when a call passes no timeout.
    """

    def __init__(
        self,
        server: str,
        database: str,
        *,
        client_id: str | None = None,
        default_timeout_seconds: int = 30,
    ) -> None:
        self._server = server
        self._database = database
        self._client_id = client_id
        self._default_timeout_seconds = default_timeout_seconds

    async def execute(self, sql: str, timeout_seconds: int | None = None) -> dict[str, Any]:
        """Execute a read-only SQL query.

        Returns:
            Result dict with ``success``, ``columns``, ``rows``,
            ``row_count``, and ``error`` keys.
        """
        from entities.shared.clients import AzureSqlClient  # noqa: PLC0415

        timeout = timeout_seconds or self._default_timeout_seconds
        try:
            async with AzureSqlClient(
                self._server, self._database, client_id=self._client_id
            ) as client:
                return await asyncio.wait_for(client.execute_query(sql), timeout=timeout)
        except TimeoutError:
            logger.warning("SQL execution exceeded %ss", timeout)
            error = f"Query timeout expired after {timeout}s"
        except Exception as exc:
            logger.exception("SQL execution error")
            error = str(exc)
        return {"success": False, "error": error, "columns": [], "rows": [], "row_count": 0}


class LoggingAuditSink:
    """``AuditSink`` that writes events to the application log."""

    async def record(self, event: dict[str, Any]) -> None:
        logger.info(
            "Audit event %s: %s", event.get("event"), json.dumps(event, default=str)[:1000]
        )


# ---------------------------------------------------------------------------
# CoreClients dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CoreClients:
    """Immutable bundle of all I/O dependencies for the insight core.

    All fields use Protocol types, enabling full dependency injection.
    Production code passes real Azure clients; tests pass fakes.

    Args:
        model_router: Model selection and completions.
        template_catalog: Published query templates.
        metadata_provider: Semantic context discovery.
        sql_generator: SQL generation from a semantic context.
        sql_executor: Read-only query execution.
        audit_sink: Destination for audit events.
        funnel_repository: Funnel storage.
    """

    model_router: ModelRouter
    template_catalog: TemplateCatalog
    metadata_provider: SemanticMetadataProvider
    sql_generator: SqlGenerator
    sql_executor: SqlExecutor
    audit_sink: AuditSink
    funnel_repository: FunnelRepository


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_core_clients(settings: Settings) -> CoreClients:
    """Build a ``CoreClients`` from application ``Settings``.

    No module-level singletons are created; each call produces a fresh,
    self-contained bundle.

    Args:
        settings: Centralised application configuration.

    Returns:
        Fully-initialised ``CoreClients``.
    """
    # -- Credential --------------------------------------------------------
    credential = (
        DefaultAzureCredential(managed_identity_client_id=settings.azure_client_id)
        if settings.azure_client_id
        else DefaultAzureCredential()
    )

    # -- Model access ------------------------------------------------------
    model_router = AgentFrameworkModelRouter(
        settings.azure_ai_project_endpoint,
        credential,
        default_model=settings.azure_ai_model_deployment_name,
        classifier_model=settings.classifier_model,
    )

    # -- Catalogs ----------------------------------------------------------
    template_catalog = JsonTemplateCatalog.from_path(
        Path(settings.template_catalog_path)
        if settings.template_catalog_path
        else DEFAULT_TEMPLATES_PATH
    )
    metadata_provider = KeywordMetadataProvider.from_path(
        Path(settings.semantic_model_path)
        if settings.semantic_model_path
        else DEFAULT_SEMANTIC_MODEL_PATH
    )

    # -- Execution ---------------------------------------------------------
    sql_executor = SqlExecutorAdapter(
        settings.azure_sql_server,
        settings.azure_sql_database,
        client_id=settings.azure_client_id,
        default_timeout_seconds=settings.query_timeout_seconds,
    )

    return CoreClients(
        model_router=model_router,
        template_catalog=template_catalog,
        metadata_provider=metadata_provider,
        sql_generator=ModelSqlGenerator.from_settings(settings, model_router),
        sql_executor=sql_executor,
        audit_sink=LoggingAuditSink(),
        funnel_repository=InMemoryFunnelRepository(),
    )
