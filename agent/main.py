"""
certbind-agent

Renews, installs and binds TLS certificates on an IIS host in
coordination with a remote certificate-issuing service.

Run with ``--auto`` for a single unattended pass (suitable for a
scheduled task), or without arguments to serve the local HTTP API that
runs passes on a schedule and on demand.
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI

from config import ensure_directories, get_log_dir, settings
from core.config_store import ConfigStoreError
from core.deploy_scheduler import DeployScheduler
from core.orchestrator import summarize
from core.services import build_services
from endpoints import deployments

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# Passes finish well before this; it only bounds callbacks still retrying
CALLBACK_DRAIN_TIMEOUT = 120.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("certbind-agent starting up...")
    ensure_directories()

    services = build_services()
    scheduler = DeployScheduler(services.run_pass)
    app.state.services = services
    app.state.scheduler = scheduler

    try:
        config = services.config_store.load()
        if config.auto_check_enabled:
            await scheduler.start(config.check_interval)
        else:
            logger.info("Automatic checks disabled; passes run on demand only")
    except ConfigStoreError as e:
        logger.warning(f"Not starting deployment scheduler: {e.message}")

    yield

    try:
        await scheduler.stop()
    except Exception as e:
        logger.warning(f"Error stopping deployment scheduler: {e}")
    await services.shutdown()
    logger.info("certbind-agent shutting down...")


app = FastAPI(
    title="certbind-agent",
    description="Local control API for certificate renewal, installation and binding.",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(deployments.router)


@app.get("/health", summary="Health Check", tags=["Health"])
async def health_check():
    return {"status": "healthy", "version": __version__, "timestamp": datetime.now().isoformat()}


def _add_file_logging() -> None:
    handler = logging.FileHandler(get_log_dir() / "deploy.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


async def run_unattended() -> int:
    """
    Run one deployment pass and wait for its callbacks.

    Returns:
        Process exit code: 0 if every result succeeded, 1 otherwise
    """
    services = build_services()
    try:
        results = await services.run_pass()
    except ConfigStoreError as e:
        logger.error(f"Deployment aborted: {e.message}")
        return 1

    for result in results:
        status = "success" if result.success else "failure"
        logger.info(f"[{status}] {result.domain}: {result.message}")

    await services.notifier.drain(timeout=CALLBACK_DRAIN_TIMEOUT)
    await services.shutdown()

    succeeded, failed = summarize(results)
    logger.info(f"Unattended pass finished: {succeeded} succeeded, {failed} failed")
    return 1 if failed else 0


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="certbind-agent", description="IIS certificate deployment agent")
    parser.add_argument("--auto", action="store_true", help="run one unattended deployment pass and exit")
    parser.add_argument("--host", default=settings.api_host, help="bind address for the local API")
    parser.add_argument("--port", type=int, default=settings.api_port, help="port for the local API")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    if args.auto:
        ensure_directories()
        _add_file_logging()
        return asyncio.run(run_unattended())

    uvicorn.run("main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(cli())
