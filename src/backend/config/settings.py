"""Centralized application settings loaded from environment variables.

All configuration is defined once here. Other modules should import
``get_settings()`` rather than calling ``os.getenv()`` directly.
"""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide configuration backed by environment variables.

    Field names are **lowercased** versions of the env-var names.
    ``pydantic-settings`` maps them automatically (case-insensitive).

    Example::

        settings = Settings()  # reads .env + real env
        threshold = settings.template_application_threshold
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- Azure AI / Foundry ------------------------------------------------

    azure_ai_project_endpoint: str = ""
    """Foundry project endpoint URL."""

    azure_ai_model_deployment_name: str = "gpt-4o"
    """Default model deployment used when routing has no better choice."""

    azure_ai_classifier_model: str | None = None
    """Model override for intent classification. Falls back to default."""

    azure_ai_generator_model: str | None = None
    """Model override for SQL generation and refinement. Falls back to default."""

    azure_client_id: str | None = None
    """Managed-identity client ID (None → system-assigned)."""

    # -- Azure SQL ---------------------------------------------------------

    azure_sql_server: str = ""
    """SQL Server hostname of the reporting database."""

    azure_sql_database: str = "InsightGen"
    """Target database name."""

    required_schema: str = "rpt"
    """Schema qualifier every table reference must carry."""

    # -- Catalogs ----------------------------------------------------------

    template_catalog_path: str = ""
    """Template catalog JSON file (empty → bundled config/templates.json)."""

    semantic_model_path: str = ""
    """Semantic model JSON file (empty → bundled config/semantic_model.json)."""

    # -- Intent classification ---------------------------------------------

    pattern_high_confidence: float = 0.9
    """Confidence for full-evidence pattern matches."""

    pattern_medium_confidence: float = 0.8
    """Confidence for partial-evidence pattern matches (e.g. status + aging)."""

    pattern_low_confidence: float = 0.6
    """Confidence for single-keyword pattern matches."""

    pattern_acceptance_threshold: float = 0.85
    """Pattern matches at or above this skip the model call."""

    classification_cache_ttl_seconds: int = 3600
    """TTL (seconds) for cached classification results."""

    model_timeout_seconds: float = 60.0
    """Upper bound on a single outbound model call."""

    # -- Template matching -------------------------------------------------

    template_application_threshold: float = 0.7
    """Minimum composite score for a template to be applied."""

    template_suggestion_threshold: float = 0.4
    """Minimum composite score for a template to be suggested."""

    template_top_n: int = 5
    """Maximum number of ranked template candidates returned."""

    template_success_rate_weight: float = 0.2
    """Weight of historical success rate in the composite score."""

    example_exact_similarity: float = 0.9
    """Example similarity above which the full example bonus applies."""

    example_near_similarity: float = 0.7
    """Example similarity above which the partial example bonus applies."""

    # -- Orchestration -----------------------------------------------------

    actionability_threshold: float = 0.5
    """Classification confidence below this triggers a clarification."""

    max_generation_attempts: int = 2
    """Direct-generation attempts before falling back to a funnel."""

    max_cte_depth: int = 3
    """Maximum top-level CTE chain length for composed queries."""

    # -- Execution ---------------------------------------------------------

    query_timeout_seconds: int = 30
    """Timeout passed to the execution collaborator."""

    default_row_limit: int = 1000
    """Row cap injected into statements without a limit or offset."""

    # -- Operational -------------------------------------------------------

    enable_instrumentation: bool = False
    """Enable OpenTelemetry tracing."""

    applicationinsights_connection_string: str | None = None
    """App Insights connection string (None → tracing disabled)."""

    enable_sensitive_data: bool = False
    """Include sensitive data (prompts, completions) in traces."""

    allow_anonymous: bool = False
    """Allow unauthenticated access to the API."""

    @model_validator(mode="after")
    def _check_threshold_order(self) -> Settings:
        if self.template_application_threshold <= self.template_suggestion_threshold:
            raise ValueError(
                "template_application_threshold must be greater than "
                "template_suggestion_threshold"
            )
        if not (
            self.pattern_low_confidence
            <= self.pattern_medium_confidence
            <= self.pattern_high_confidence
        ):
            raise ValueError("pattern confidence bands must be ordered low <= medium <= high")
        return self

    @property
    def classifier_model(self) -> str:
        """Model deployment used for intent classification."""
        return self.azure_ai_classifier_model or self.azure_ai_model_deployment_name

    @property
    def generator_model(self) -> str:
        """Model deployment used for SQL generation and refinement."""
        return self.azure_ai_generator_model or self.azure_ai_model_deployment_name


def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    Uses ``lru_cache`` semantics via a module-level singleton so the
    ``.env`` file is read at most once per process.

    Returns:
        The global ``Settings`` object.
    """
    return _settings


_settings = Settings()
