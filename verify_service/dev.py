"""
Local development entry point. Run with:
    DEV_AUTH_BYPASS=true uvicorn verify_service.dev:create_dev_app --factory --reload

Every request is treated as a synthetic, already verified identity, so the
Identity Provider and the verification gate are skipped entirely. Issued
tokens are echoed back in API responses. This module refuses to build an app
when ENVIRONMENT marks a production deployment; production serves
verify_service.main:create_app, which never reads DEV_AUTH_BYPASS.
"""

import logging
import secrets

from fastapi import FastAPI

from verify_service.dependencies.gate import (
    get_current_identity,
    require_verified_identity,
)
from verify_service.errors import ServerMisconfigured
from verify_service.main import create_app
from verify_service.services.identity import Identity
from verify_service.settings import settings

logger = logging.getLogger(__name__)


def create_dev_app(cfg=settings) -> FastAPI:
    if cfg.is_production:
        raise ServerMisconfigured("Dev auth bypass cannot run in production")
    if not cfg.DEV_AUTH_BYPASS:
        raise ServerMisconfigured("verify_service.dev requires DEV_AUTH_BYPASS=true")

    secret = None
    if not (cfg.VERIFICATION_TOKEN_SECRET or cfg.VERIFICATION_ROOT_SECRET):
        logger.warning("No signing secret configured, using an ephemeral dev key")
        secret = secrets.token_urlsafe(32)

    app = create_app(cfg, signing_secret=secret)
    app.state.expose_tokens = True

    identity = Identity(
        id=cfg.DEV_BYPASS_SUBJECT_ID,
        email=cfg.DEV_BYPASS_EMAIL,
        is_admin=True,
    )

    async def bypass_identity() -> Identity:
        return identity

    app.dependency_overrides[get_current_identity] = bypass_identity
    app.dependency_overrides[require_verified_identity] = bypass_identity
    logger.warning(f"DEV AUTH BYPASS ACTIVE: all requests act as {identity.email}")
    return app
