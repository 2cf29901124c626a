"""
Stack API routes for Kubernetes stacks.

Endpoints:
- PUT /api/stacks/{stack_id}/kubernetes - Update a stack (git settings or manifest content)
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from auth.routes import get_token_data
from auth.shared import get_client_ip
from database import ObjectNotFoundError, get_database_manager
from deployment.autoupdate import StackServices
from deployment.kube_client import get_kube_client_factory
from deployment.kube_deployer import KubeDeployer
from deployment.stack_updater import StackUpdater
from models.stack_models import FileStackUpdatePayload, GitStackUpdatePayload, StackResponse
from scheduler import get_scheduler
from security.audit import security_audit
from utils.errors import ServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stacks", tags=["stacks"])

_services: Optional[StackServices] = None
_services_lock = threading.Lock()


def get_stack_services() -> StackServices:
    """FastAPI dependency for the process-wide stack collaborators."""
    global _services

    if _services is not None:
        return _services

    with _services_lock:
        if _services is None:
            _services = StackServices(
                db=get_database_manager(),
                scheduler=get_scheduler(),
                kube_factory=get_kube_client_factory(),
                deployer=KubeDeployer(),
            )
        return _services


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = '.'.join(str(part) for part in first.get('loc', ()))
    message = first.get('msg', 'invalid value')
    return f"{location}: {message}" if location else message


@router.put("/{stack_id}/kubernetes", response_model=StackResponse)
async def update_kubernetes_stack(
    stack_id: int,
    request: Request,
    body: Dict[str, Any] = Body(...),
    services: StackServices = Depends(get_stack_services),
):
    """
    Update a Kubernetes stack.

    The payload shape depends on the stack: git-managed stacks take
    repository settings, file-managed stacks take the manifest content.
    """
    token_data = get_token_data(request)
    if token_data is None:
        raise HTTPException(status_code=400, detail="Failed to retrieve user token data")

    try:
        stack = services.db.get_stack(stack_id)
    except ObjectNotFoundError:
        raise HTTPException(status_code=404, detail="Unable to find a stack with the specified identifier")

    payload_model = GitStackUpdatePayload if stack.is_git_backed else FileStackUpdatePayload
    try:
        payload = payload_model.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid request payload: {_validation_message(e)}")

    client_ip = get_client_ip(request)
    updater = StackUpdater(services)
    try:
        stack = await updater.update(stack, payload, token_data)
    except ServiceError as e:
        security_audit.log_privileged_action(
            client_ip, "update_stack", f"stack:{stack_id}", False, username=token_data.username,
        )
        raise e.to_http_exception()

    stack.updated_by = token_data.username
    stack.update_date = datetime.now(timezone.utc)
    try:
        services.db.update_stack(stack)
    except (ObjectNotFoundError, SQLAlchemyError) as e:
        logger.error(f"Unable to persist stack {stack_id}: {e}", exc_info=True)
        await updater.discard_unpersisted(stack)
        security_audit.log_privileged_action(
            client_ip, "update_stack", f"stack:{stack_id}", False, username=token_data.username,
        )
        raise HTTPException(status_code=500, detail="Unable to persist the stack changes inside the database")

    security_audit.log_privileged_action(
        client_ip, "update_stack", f"stack:{stack_id}", True, username=token_data.username,
    )
    return StackResponse.from_stack(stack)
