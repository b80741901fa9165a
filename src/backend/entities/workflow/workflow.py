"""
Insight services - wires the core components around one ``CoreClients``.

The API builds one ``InsightServices`` at startup and shares it across
requests. Components hold no per-request state apart from the
classification cache and the funnel repository.
"""

import logging
from dataclasses import dataclass

from config.settings import Settings
from entities.funnel import FunnelEngine
from entities.intent_classifier import IntentClassifier
from entities.orchestrator import ThreeModeOrchestrator
from entities.refinement import Refiner
from entities.shared.audit import AuditDispatcher
from entities.template_matcher import TemplateMatcher

from .clients import CoreClients

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsightServices:
    """The public operations of the insight core, ready to call."""

    classifier: IntentClassifier
    template_matcher: TemplateMatcher
    funnel_engine: FunnelEngine
    orchestrator: ThreeModeOrchestrator
    refiner: Refiner
    audit: AuditDispatcher


def create_insight_services(settings: Settings, clients: CoreClients) -> InsightServices:
    """Build every core component from *settings* and *clients*.

    Args:
        settings: Thresholds, timeouts and limits.
        clients: I/O collaborators (real or fake).

    Returns:
        ``InsightServices`` sharing one audit dispatcher.
    """
    audit = AuditDispatcher(clients.audit_sink)
    classifier = IntentClassifier.from_settings(settings, clients.model_router, audit)
    template_matcher = TemplateMatcher.from_settings(settings, clients.template_catalog)
    funnel_engine = FunnelEngine.from_settings(
        settings,
        clients.funnel_repository,
        audit,
        model_router=clients.model_router,
        sql_generator=clients.sql_generator,
        metadata_provider=clients.metadata_provider,
        sql_executor=clients.sql_executor,
    )
    orchestrator = ThreeModeOrchestrator.from_settings(
        settings,
        classifier=classifier,
        template_matcher=template_matcher,
        metadata_provider=clients.metadata_provider,
        sql_generator=clients.sql_generator,
        funnel_engine=funnel_engine,
        audit=audit,
    )
    refiner = Refiner.from_settings(
        settings, clients.model_router, audit, sql_generator=clients.sql_generator
    )
    logger.info("Insight services ready (default model %s)", settings.azure_ai_model_deployment_name)
    return InsightServices(
        classifier=classifier,
        template_matcher=template_matcher,
        funnel_engine=funnel_engine,
        orchestrator=orchestrator,
        refiner=refiner,
        audit=audit,
    )
