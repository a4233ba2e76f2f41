from __future__ import annotations

import logging

from grantflow.api import create_app
from grantflow.config import load_settings
from grantflow.db import Database, SqlGrantRepository
from grantflow.observability import configure_observability
from grantflow.repository import InMemoryGrantRepository
from grantflow.service import GrantService

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlGrantRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryGrantRepository()

    service = GrantService(
        repository=repo,
        default_voting_threshold=settings.default_voting_threshold,
        default_approval_percentage=settings.default_approval_percentage,
        default_multisig_threshold=settings.default_multisig_threshold,
        default_network=settings.default_network,
    )
    return create_app(service=service, api_access_token=settings.api_token)


app = build_app()
