"""
Enforcement worker entrypoint.

    python -m finopsbridge.main        (or the `finopsbridge-worker` script)

Runs one enforcement loop per deployment until SIGINT/SIGTERM.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog

from finopsbridge.modules.enforcement.domain.ledger import ViolationLedger
from finopsbridge.modules.enforcement.domain.orchestrator import EnforcementOrchestrator
from finopsbridge.modules.enforcement.domain.remediation import RemediationDispatcher
from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository
from finopsbridge.modules.enforcement.domain.rules import RuleEvaluator
from finopsbridge.modules.notifications.domain.fanout import NotificationFanout
from finopsbridge.shared.adapters import ProviderRegistry
from finopsbridge.shared.core.config import reload_settings_from_environment
from finopsbridge.shared.core.http import close_http_client, init_http_client
from finopsbridge.shared.core.logging import setup_logging
from finopsbridge.shared.db.session import create_engine, create_session_maker

logger = structlog.get_logger()


def build_orchestrator(repository: EnforcementRepository) -> EnforcementOrchestrator:
    """Wire the enforcement components around one repository."""
    evaluator = RuleEvaluator(repository)
    ledger = ViolationLedger(repository)
    dispatcher = RemediationDispatcher(repository, ledger, registry=ProviderRegistry)
    fanout = NotificationFanout(repository)
    return EnforcementOrchestrator(
        repository,
        evaluator,
        ledger,
        dispatcher,
        fanout,
        registry=ProviderRegistry,
    )


@asynccontextmanager
async def worker_lifespan() -> AsyncGenerator[EnforcementOrchestrator, None]:
    settings = reload_settings_from_environment()
    logger.info(
        "worker_starting",
        app_name=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
        providers=ProviderRegistry.supported_kinds(),
    )

    engine = create_engine(settings)
    await init_http_client()
    orchestrator = build_orchestrator(EnforcementRepository(create_session_maker(engine)))
    orchestrator.start()
    try:
        yield orchestrator
    finally:
        logger.info("worker_shutting_down")
        # Let the in-flight tick finish before the pool and engine go away.
        await orchestrator.stop()
        await close_http_client()
        await engine.dispose()
        logger.info("db_engine_disposed")


async def run_worker() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    async with worker_lifespan():
        await stop_event.wait()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
