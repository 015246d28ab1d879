"""
Deployment endpoints.

Trigger passes on demand, inspect the last pass, list configured
certificates and update the issuing-service credentials.
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from core.api_client import APIError, validate_base_url
from core.config_store import ConfigStoreError
from core.deploy_scheduler import DeployScheduler, PassInProgressError
from core.key_store import KeyStoreError
from core.services import AgentServices
from models.certificate import DeploymentResult, days_until_expiry
from models.config import CertificateSummary, CredentialsUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["Deployments"])


def get_services(request: Request) -> AgentServices:
    return request.app.state.services


def get_scheduler(request: Request) -> DeployScheduler:
    return request.app.state.scheduler


@router.get("/status", summary="Scheduler and Last Pass Status")
async def get_status(scheduler: DeployScheduler = Depends(get_scheduler)):
    return scheduler.get_status()


@router.get("/results", response_model=List[DeploymentResult], summary="Results of the Last Pass")
async def get_results(scheduler: DeployScheduler = Depends(get_scheduler)):
    return scheduler.last_results


@router.post(
    "/run",
    response_model=List[DeploymentResult],
    summary="Run a Deployment Pass Now",
    description="Runs one pass synchronously and returns its per-domain results. "
    "Returns 409 if a pass is already running.",
)
async def run_pass(scheduler: DeployScheduler = Depends(get_scheduler)):
    try:
        return await scheduler.run_now()
    except PassInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.get("/certificates", response_model=List[CertificateSummary], summary="List Configured Certificates")
async def list_certificates(services: AgentServices = Depends(get_services)):
    try:
        config = await asyncio.to_thread(services.config_store.load)
    except ConfigStoreError as e:
        raise HTTPException(status_code=500, detail={"message": e.message, "suggestion": e.suggestion})

    summaries = []
    for cfg in config.certificates:
        expires_on = cfg.expiry_date()
        last_deployed = None
        if cfg.order_id > 0:
            try:
                meta = services.orders.load_meta(cfg.order_id)
                last_deployed = meta.last_deployed if meta else None
            except KeyStoreError as e:
                logger.warning(f"Could not read metadata for order {cfg.order_id}: {e.message}")
        if cfg.auto_bind_mode:
            targets = ["auto"]
        else:
            targets = [f"{rule.domain}:{rule.port}" for rule in cfg.bind_rules]
        summaries.append(
            CertificateSummary(
                domain=cfg.domain,
                order_id=cfg.order_id,
                enabled=cfg.enabled,
                mode="local_key" if cfg.use_local_key else "fetch",
                auto_bind_mode=cfg.auto_bind_mode,
                bind_targets=targets,
                expires_at=cfg.expires_at,
                days_until_expiry=days_until_expiry(expires_on) if expires_on else None,
                last_deployed=last_deployed,
            )
        )
    return summaries


@router.put("/credentials", summary="Update API Endpoint and Token")
async def update_credentials(
    body: CredentialsUpdate,
    services: AgentServices = Depends(get_services),
    scheduler: DeployScheduler = Depends(get_scheduler),
):
    if scheduler.running:
        raise HTTPException(status_code=409, detail="A deployment pass is running; try again when it finishes")
    try:
        base_url = validate_base_url(body.api_base_url)
    except APIError as e:
        raise HTTPException(status_code=422, detail=e.message)

    def _update():
        with services.config_store.lock:
            config = services.config_store.load()
            config.api_base_url = base_url
            services.config_store.set_token(config, body.token)
            services.config_store.save(config)

    try:
        await asyncio.to_thread(_update)
    except ConfigStoreError as e:
        raise HTTPException(status_code=500, detail={"message": e.message, "suggestion": e.suggestion})
    logger.info(f"Deployment API endpoint set to {base_url}")
    return {"status": "updated", "api_base_url": base_url}
