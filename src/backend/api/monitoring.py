"""
Application Insights observability configuration for the Insight API.

This module configures Azure Monitor/Application Insights for tracing
requests and the model calls made by the insight core.

Settings:
- enable_instrumentation: Turn tracing on (default: off)
- applicationinsights_connection_string: Azure Monitor connection string (required when enabled)
- enable_sensitive_data: Record prompts/completions in spans (default: off)
"""

import logging

from config.settings import Settings

logger = logging.getLogger(__name__)


def is_observability_enabled(settings: Settings) -> bool:
    """Check if OpenTelemetry observability is enabled."""
    return settings.enable_instrumentation


def configure_observability(settings: Settings) -> bool:
    """
    Configure Application Insights observability if enabled.

    Returns:
        True when tracing was configured.
    """
    if not is_observability_enabled(settings):
        logger.info("Observability disabled (ENABLE_INSTRUMENTATION != true)")
        return False

    if not settings.applicationinsights_connection_string:
        logger.warning(
            "ENABLE_INSTRUMENTATION=true but APPLICATIONINSIGHTS_CONNECTION_STRING not set. "
            "Observability will not be configured."
        )
        return False

    try:
        _configure_azure_monitor(
            settings.applicationinsights_connection_string, settings.enable_sensitive_data
        )
    except ImportError as e:
        logger.warning(
            "Azure Monitor packages not available (%s). "
            "Install with: pip install 'insight-core[observability]'",
            e,
        )
        return False
    except (RuntimeError, ValueError, OSError) as e:
        logger.error("Failed to configure Azure Monitor: %s", e)
        return False
    return True


def _configure_azure_monitor(connection_string: str, enable_sensitive: bool) -> None:
    """Configure Azure Monitor for production telemetry."""
    from agent_framework.observability import (  # noqa: PLC0415
        create_resource,
        enable_instrumentation,
    )
    from azure.monitor.opentelemetry import (  # type: ignore[import-not-found]  # noqa: PLC0415
        configure_azure_monitor,
    )

    configure_azure_monitor(
        connection_string=connection_string,
        resource=create_resource(),
        instrumentation_options={
            "azure_sdk": {"enabled": True},
            "fastapi": {"enabled": True},
        },
    )
    enable_instrumentation(enable_sensitive_data=enable_sensitive)

    # Context detach warnings are emitted for spans that outlive a request
    logging.getLogger("opentelemetry.context").setLevel(logging.CRITICAL)

    logger.info("OpenTelemetry configured with Azure Monitor (sensitive_data=%s)", enable_sensitive)
