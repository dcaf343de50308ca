"""HTTP surface for the passkey ceremonies.

Endpoints:
    GET  /health                          Liveness
    GET  /credential?tenant=&username=    Registration options
    POST /credential?tenant=&username=    Attestation response
    GET  /assertion                       Username-less assertion options
    GET  /assertion/{tenant}/{username}   User-scoped assertion options
    POST /assertion                       Assertion response
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog
from aiohttp import web

from passgate.ceremony.engine import CeremonyEngine
from passgate.ceremony.orchestrator import CeremonyOrchestrator
from passgate.ceremony.verifier import CeremonyVerifier, Fido2Verifier
from passgate.core.config import PassgateConfig
from passgate.core.exceptions import PassgateError, ValidationError, format_error
from passgate.storage.challenges import ChallengeStore, MemoryChallengeStore
from passgate.storage.redis_store import RedisChallengeStore
from passgate.storage.repository import CredentialRepository

logger = structlog.get_logger()

ORCHESTRATOR_KEY = web.AppKey("orchestrator", CeremonyOrchestrator)
CHALLENGES_KEY = web.AppKey("challenges", ChallengeStore)


def _error_response(status: int, code: str, message: str) -> web.Response:
    return web.json_response(format_error(code, message), status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map ceremony errors to JSON error bodies with their HTTP status."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PassgateError as e:
        log = logger.warning if e.status < 500 else logger.error
        log(
            "Request failed",
            path=request.path,
            code=e.code,
            status=e.status,
            reason=getattr(e, "reason", None),
        )
        return _error_response(e.status, e.code, e.message)
    except TimeoutError:
        logger.error("Request timed out", path=request.path)
        return _error_response(504, "TIMEOUT", "Request timed out")
    except Exception as e:
        logger.exception("Unhandled error", path=request.path, error=str(e))
        return _error_response(500, "INTERNAL_ERROR", "Internal error")


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be JSON.") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


class CeremonyHandlers:
    """Request handlers bound to one orchestrator."""

    def __init__(self, orchestrator: CeremonyOrchestrator) -> None:
        self.orchestrator = orchestrator

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def registration_options(self, request: web.Request) -> web.Response:
        options = await self.orchestrator.begin_registration(
            request.query.get("tenant"), request.query.get("username")
        )
        return web.json_response(options)

    async def register(self, request: web.Request) -> web.Response:
        tenant = request.query.get("tenant")
        username = request.query.get("username")
        if not tenant or not username:
            raise ValidationError("Tenant and username are required.")
        response = await _read_json(request)
        await self.orchestrator.complete_registration(tenant, username, response)
        return web.Response(status=200)

    async def assertion_options(self, request: web.Request) -> web.Response:
        options = await self.orchestrator.begin_assertion()
        return web.json_response(options)

    async def user_assertion_options(self, request: web.Request) -> web.Response:
        options = await self.orchestrator.begin_assertion(
            request.match_info["tenant"], request.match_info["username"]
        )
        return web.json_response(options)

    async def assert_credential(self, request: web.Request) -> web.Response:
        response = await _read_json(request)
        await self.orchestrator.complete_assertion(response)
        return web.Response(status=200)


def create_app(orchestrator: CeremonyOrchestrator) -> web.Application:
    """Create the aiohttp application around an orchestrator.

    The challenge store's background work is tied to the application
    lifecycle.
    """
    app = web.Application(middlewares=[error_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator
    app[CHALLENGES_KEY] = orchestrator.challenges

    handlers = CeremonyHandlers(orchestrator)
    app.router.add_get("/health", handlers.health)
    app.router.add_get("/credential", handlers.registration_options)
    app.router.add_post("/credential", handlers.register)
    app.router.add_get("/assertion", handlers.assertion_options)
    app.router.add_get("/assertion/{tenant}/{username}", handlers.user_assertion_options)
    app.router.add_post("/assertion", handlers.assert_credential)

    app.on_startup.append(_start_challenges)
    app.on_cleanup.append(_stop_challenges)
    return app


async def _start_challenges(app: web.Application) -> None:
    await app[CHALLENGES_KEY].start()


async def _stop_challenges(app: web.Application) -> None:
    await app[CHALLENGES_KEY].stop()


def build_challenge_store(config: PassgateConfig) -> ChallengeStore:
    """Pick the challenge store from configuration."""
    if config.redis_url:
        return RedisChallengeStore.from_url(config.redis_url, prefix=config.redis_prefix)
    return MemoryChallengeStore(cleanup_interval=config.challenge_cleanup_interval)


def build_orchestrator(
    config: PassgateConfig,
    verifier: CeremonyVerifier | None = None,
) -> CeremonyOrchestrator:
    """Wire repository, challenge store, engine and verifier from configuration."""
    repository = CredentialRepository(
        config.storage_path, max_device_public_keys=config.max_device_public_keys
    )
    engine = CeremonyEngine(config, verifier or Fido2Verifier(config))
    return CeremonyOrchestrator(config, repository, build_challenge_store(config), engine)


def build_application(config: PassgateConfig) -> web.Application:
    """Create a production application from configuration."""
    return create_app(build_orchestrator(config))


async def run_server(config: PassgateConfig) -> None:
    """Serve until cancelled."""
    app = build_application(config)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info(
        "Passgate server started",
        host=config.host,
        port=config.port,
        rp_id=config.rp_id,
        storage=config.storage_path or "memory",
        challenges="redis" if config.redis_url else "memory",
    )
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        logger.info("Passgate server stopped")
