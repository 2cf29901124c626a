"""
Kubernetes stack updates.

A stack is updated according to its source:

Git-managed stacks (settings only, nothing is deployed here):
    stop auto-update job -> apply payload -> probe repository -> start new job
The existing job is stopped before the stack is touched so a running job
never sees half-applied settings. If the update aborts after that point the
stored job id is cleared, since its job is gone.

File-managed stacks (deploy-then-commit):
    write manifest to a temp dir -> persist rename -> refresh pull secrets
    -> deploy from the temp dir -> write durable copy with backup -> drop backup
A failed deploy never touches the durable manifest; a failed durable write
is rolled back to the previous bytes.

The caller persists the returned stack and calls discard_unpersisted() if
that fails, so no job outlives an update that was never stored.
"""

import asyncio
import logging
import shutil
import tempfile
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from database import ObjectNotFoundError
from deployment import stack_storage
from deployment.autoupdate import (
    StackServices,
    refresh_registry_secrets_best_effort,
    start_autoupdate,
    stop_autoupdate,
)
from deployment.kube_client import KubeClientError
from deployment.kube_deployer import KubeDeployError
from deployment.types import (
    AutoUpdateSettings,
    FileSource,
    GitAuthentication,
    GitSource,
    KubeAppLabels,
    Stack,
)
from gitops.git_service import GitCommandError, GitNotAvailableError
from models.auth_models import TokenData
from models.stack_models import FileStackUpdatePayload, GitStackUpdatePayload
from scheduler import SchedulerError
from utils.errors import BadRequestError, InternalServerError

logger = logging.getLogger(__name__)


def effective_password(payload: GitStackUpdatePayload, prior: Optional[GitAuthentication]) -> str:
    """
    Password to store for an authenticated git stack.

    An empty password in the payload means "keep the current one" when the
    stack already has one; otherwise the payload password is used as given.
    """
    if payload.repository_password == '' and prior is not None and prior.password:
        return prior.password
    return payload.repository_password


class StackUpdater:
    """Applies update payloads to Kubernetes stacks."""

    def __init__(self, services: StackServices):
        self.services = services

    async def update(self, stack: Stack, payload, token_data: Optional[TokenData]) -> Stack:
        """
        Dispatch on the stack source.

        Args:
            stack: Stack loaded from the store (mutated in place)
            payload: GitStackUpdatePayload for git stacks,
                FileStackUpdatePayload for file stacks
            token_data: Caller identity, None if unknown

        Raises:
            BadRequestError: Payload doesn't match the stack source, or no caller identity
            InternalServerError: Git, scheduler, deploy or persistence failure
        """
        source = stack.source
        if isinstance(source, GitSource):
            if not isinstance(payload, GitStackUpdatePayload):
                raise BadRequestError("Invalid request payload")
            return await self.update_git_stack(stack, payload)
        if isinstance(source, FileSource):
            if not isinstance(payload, FileStackUpdatePayload):
                raise BadRequestError("Invalid request payload")
            return await self.update_file_stack(stack, payload, token_data)
        raise TypeError(f"Unknown stack source {type(source).__name__}")

    # =========================================================================
    # Git-managed stacks
    # =========================================================================

    async def update_git_stack(self, stack: Stack, payload: GitStackUpdatePayload) -> Stack:
        git_config = stack.git_config
        previous_auth = git_config.authentication
        previous_job_id = stack.auto_update.job_id if stack.auto_update else None

        # 1. Stop the running job before anything changes
        if stack.auto_update is not None:
            await stop_autoupdate(stack.id, previous_job_id, self.services.scheduler)
            # A redeploy finishing inside stop() already stored its commit
            self._reload_job_fields(stack)

        try:
            # 2. Apply payload
            git_config.reference_name = payload.repository_reference_name
            git_config.tls_skip_verify = payload.tls_skip_verify
            git_config.authentication = None
            stack.auto_update = None
            if payload.auto_update is not None:
                stack.auto_update = AutoUpdateSettings(interval=payload.auto_update.interval)

            # 3. Credentials, 4. reachability probe
            if payload.repository_authentication:
                git_config.authentication = GitAuthentication(
                    username=payload.repository_username,
                    password=effective_password(payload, previous_auth),
                )
                await self._probe_repository(stack)

            # 5. New job
            if stack.auto_update is not None and stack.auto_update.interval:
                try:
                    stack.auto_update.job_id = await start_autoupdate(
                        stack.id, stack.auto_update.interval, self.services,
                    )
                except SchedulerError as e:
                    logger.error(f"Unable to start auto-update for stack {stack.id}: {e}")
                    raise InternalServerError("Unable to parse stack's auto update interval")
        except Exception:
            if previous_job_id:
                self._forget_stopped_job(stack.id)
            raise

        logger.info(f"Updated git settings of stack {stack.id} ({stack.name})")
        return stack

    async def _probe_repository(self, stack: Stack) -> None:
        git_config = stack.git_config
        auth = git_config.authentication
        try:
            await self.services.git().latest_commit_id(
                git_config.url,
                git_config.reference_name,
                auth.username,
                auth.password,
                git_config.tls_skip_verify,
            )
        except (GitCommandError, GitNotAvailableError) as e:
            logger.error(f"Unable to fetch git repository for stack {stack.id}: {e}")
            raise InternalServerError(f"Unable to fetch git repository: {e}")

    def _reload_job_fields(self, stack: Stack) -> None:
        """Pick up what an auto-update run wrote while the caller held its snapshot."""
        try:
            stored = self.services.db.get_stack(stack.id)
        except (ObjectNotFoundError, SQLAlchemyError) as e:
            logger.warning(f"Unable to reload stack {stack.id} after stopping its job: {e}")
            return

        if stored.git_config is not None:
            stack.git_config.config_hash = stored.git_config.config_hash
        stack.project_path = stored.project_path
        stack.update_date = stored.update_date
        stack.updated_by = stored.updated_by

    async def discard_unpersisted(self, stack: Stack) -> None:
        """
        Undo the job side of a git update whose result could not be stored.

        The job started by the update is stopped and the stored job id, whose
        job the update already stopped, is cleared.
        """
        if not stack.is_git_backed:
            return
        if stack.auto_update is not None and stack.auto_update.job_id:
            await stop_autoupdate(stack.id, stack.auto_update.job_id, self.services.scheduler)
        self._forget_stopped_job(stack.id)

    def _forget_stopped_job(self, stack_id: int) -> None:
        """Clear the stored job id of a stack whose job was stopped by an aborted update."""
        try:
            stored = self.services.db.get_stack(stack_id)
            if stored.auto_update is not None and stored.auto_update.job_id:
                stored.auto_update.job_id = None
                self.services.db.update_stack(stored)
        except (ObjectNotFoundError, SQLAlchemyError) as e:
            logger.warning(f"Unable to clear auto-update job id of stack {stack_id}: {e}")

    # =========================================================================
    # File-managed stacks
    # =========================================================================

    async def update_file_stack(self, stack: Stack, payload: FileStackUpdatePayload,
                                token_data: Optional[TokenData]) -> Stack:
        if token_data is None:
            raise BadRequestError("Failed to retrieve user token data")

        try:
            temp_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix='kube_file_content')
        except OSError as e:
            logger.error(f"Failed to create a temp directory for stack {stack.id}: {e}")
            raise InternalServerError("Failed to persist deployment file in a temp directory")

        try:
            await self._deploy_from_temp_dir(stack, payload, temp_dir)
        finally:
            await asyncio.to_thread(shutil.rmtree, temp_dir, True)

        stack_folder = stack_storage.get_stack_folder(stack.id)
        try:
            project_path = await stack_storage.update_durable(
                stack_folder, stack.entry_point, payload.stack_file_content,
            )
        except (OSError, ValueError) as e:
            try:
                await stack_storage.rollback(stack_folder, stack.entry_point)
            except (OSError, ValueError) as rollback_error:
                # The persistence failure is what the client sees
                logger.warning(f"Rollback of stack {stack.id} file failed: {rollback_error}")
            logger.error(f"Unable to persist manifest of stack {stack.id}: {e}")
            raise InternalServerError("Unable to persist Kubernetes Manifest file on disk")

        stack.project_path = project_path
        await stack_storage.remove_backup(stack_folder, stack.entry_point)

        logger.info(f"Deployed and stored manifest of stack {stack.id} ({stack.name})")
        return stack

    async def _deploy_from_temp_dir(self, stack: Stack, payload: FileStackUpdatePayload, temp_dir: str) -> None:
        try:
            await stack_storage.write_ephemeral(temp_dir, stack.entry_point, payload.stack_file_content)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write manifest of stack {stack.id} to {temp_dir}: {e}")
            raise InternalServerError("Failed to persist deployment file in a temp directory")

        # Persist a rename before deploying so retries find the stack by its new name
        if payload.stack_name and payload.stack_name != stack.name:
            stack.name = payload.stack_name
            try:
                self.services.db.update_stack(stack)
            except (ObjectNotFoundError, SQLAlchemyError) as e:
                logger.error(f"Failed to update name of stack {stack.id}: {e}", exc_info=True)
                raise InternalServerError("Failed to update stack name")

        await refresh_registry_secrets_best_effort(self.services, stack)

        # Deploy from the temp dir so a failed deploy leaves the durable manifest alone
        stack.project_path = temp_dir
        try:
            kube = self.services.kube_factory.get_client(stack.endpoint_id)
            await self.services.deployer.deploy(kube, stack, KubeAppLabels(
                stack_id=stack.id,
                stack_name=stack.name,
                owner=stack.created_by,
                kind='content',
            ))
        except (KubeClientError, KubeDeployError) as e:
            logger.error(f"Unable to deploy stack {stack.id} via file content: {e}")
            raise InternalServerError(f"Unable to deploy Kubernetes stack via file content: {e}")
