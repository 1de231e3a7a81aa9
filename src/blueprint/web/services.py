"""
Service wiring for the web app.

One Services instance per process, built at startup and stored on
app.state. Routes get it through the get_services dependency so tests can
swap in fakes.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from blueprint.db.store import PersistenceStore, SupabaseStore
from blueprint.generation import GenerationBackend, GenerationPipeline, HttpGenerationBackend, ProgressRelay
from blueprint.orchestrator import SessionManager
from blueprint.webhooks import WebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: PersistenceStore
    backend: GenerationBackend
    relay: ProgressRelay
    pipeline: GenerationPipeline
    sessions: SessionManager
    webhooks: WebhookHandler


def build_services(
    store: PersistenceStore | None = None,
    backend: GenerationBackend | None = None,
    relay: ProgressRelay | None = None,
) -> Services:
    store = store or SupabaseStore()
    backend = backend or HttpGenerationBackend()
    relay = relay or ProgressRelay()
    pipeline = GenerationPipeline(store, backend, relay=relay)
    return Services(
        store=store,
        backend=backend,
        relay=relay,
        pipeline=pipeline,
        sessions=SessionManager(store, pipeline),
        webhooks=WebhookHandler(store),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        logger.info("Building services on first request")
        services = build_services()
        request.app.state.services = services
    return services
