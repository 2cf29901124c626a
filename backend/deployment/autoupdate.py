"""
Auto-update jobs for git-managed stacks.

A job periodically asks the repository for the latest commit of the stack's
reference and redeploys the stack when it moved. Jobs are registered with the
JobScheduler; their ids are stored on the stack record so a later update can
stop them.

Redeploy protocol (same guarantees as uploaded manifests):
    clone into a temp dir -> deploy from the temp dir -> copy the tree into the
    durable stack folder with a backup -> persist -> drop the backup
A failure before the copy leaves the durable folder untouched; a failure
during or after the copy restores the backup.
"""

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from database import DatabaseManager, ObjectNotFoundError
from deployment import stack_storage
from deployment.kube_client import KubeClientError, KubeClientFactory
from deployment.kube_deployer import KubeDeployer
from deployment.registry_secrets import refresh_ecr_secrets
from deployment.types import KubeAppLabels, Stack
from gitops.git_service import GitService, get_git_service
from scheduler import JobScheduler, SchedulerError

logger = logging.getLogger(__name__)

AUTOUPDATE_USER = 'autoupdate'


@dataclass
class StackServices:
    """Collaborators needed to update and redeploy stacks."""
    db: DatabaseManager
    scheduler: JobScheduler
    kube_factory: KubeClientFactory
    deployer: KubeDeployer
    git_service: Optional[GitService] = None

    def git(self) -> GitService:
        """
        GitService, resolved on first use.

        Raises:
            GitNotAvailableError: If git is not installed
        """
        if self.git_service is None:
            self.git_service = get_git_service()
        return self.git_service


async def refresh_registry_secrets_best_effort(services: StackServices, stack: Stack) -> None:
    """
    Refresh ECR pull secrets for the stack namespace, ignoring every failure.

    Deployments of public images succeed without the secrets, so neither a
    missing client nor a failed refresh may block the deploy.
    """
    try:
        kube = services.kube_factory.get_client(stack.endpoint_id)
    except KubeClientError as e:
        logger.debug(f"Skipping registry secret refresh for stack {stack.id}: {e}")
        return

    try:
        await refresh_ecr_secrets(services.db, kube, stack.endpoint_id, stack.namespace)
    except Exception as e:
        # Intentionally discarded: the deploy proceeds without fresh secrets
        logger.warning(f"Registry secret refresh failed for stack {stack.id}: {e}")


async def start_autoupdate(stack_id: int, interval: str, services: StackServices) -> str:
    """
    Register the auto-update job of a stack.

    Returns:
        Job id to store on the stack

    Raises:
        SchedulerError: If the interval is invalid
    """
    async def _job():
        await redeploy_when_changed(stack_id, services)

    return await services.scheduler.start(stack_id, interval, _job)


async def stop_autoupdate(stack_id: int, job_id: Optional[str], scheduler: JobScheduler) -> None:
    """Stop the auto-update job of a stack. Unknown job ids are ignored."""
    if not job_id:
        return
    await scheduler.stop(stack_id, job_id)


async def redeploy_when_changed(stack_id: int, services: StackServices) -> bool:
    """
    Redeploy a git-managed stack if its reference moved.

    Returns:
        True if the stack was redeployed, False if nothing changed

    Raises:
        GitCommandError, KubeClientError, KubeDeployError, OSError: On
            failures; the scheduler logs them and retries on the next tick
    """
    try:
        stack = services.db.get_stack(stack_id)
    except ObjectNotFoundError:
        stack = None

    if stack is None or stack.git_config is None:
        logger.info(f"Stack {stack_id} is gone or not git-managed, stopping its auto-update job")
        job = services.scheduler.get_job(stack_id)
        if job is not None:
            services.scheduler.stop_nowait(stack_id, job.job_id)
        return False

    git_config = stack.git_config

    auth = git_config.authentication
    username = auth.username if auth else ''
    password = auth.password if auth else ''

    git = services.git()
    latest = await git.latest_commit_id(
        git_config.url, git_config.reference_name, username, password, git_config.tls_skip_verify,
    )
    if latest == git_config.config_hash:
        logger.debug(f"Stack {stack_id} is up to date at {latest[:12]}")
        return False

    logger.info(f"Stack {stack_id} ({stack.name}) changed: {git_config.config_hash} -> {latest}")

    stack_folder = stack_storage.get_stack_folder(stack.id)
    temp_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix='stackyard-git-')
    try:
        commit = await git.clone(
            git_config.url, git_config.reference_name, temp_dir,
            username, password, git_config.tls_skip_verify,
        )

        await refresh_registry_secrets_best_effort(services, stack)

        # Deploy from the clone so a failed deploy never touches the durable folder
        stack.project_path = temp_dir
        kube = services.kube_factory.get_client(stack.endpoint_id)
        await services.deployer.deploy(kube, stack, KubeAppLabels(
            stack_id=stack.id,
            stack_name=stack.name,
            owner=stack.created_by,
            kind='git',
        ))

        try:
            stack.project_path = await stack_storage.replace_durable_tree(stack_folder, temp_dir)
            git_config.config_hash = commit
            stack.update_date = datetime.now(timezone.utc)
            stack.updated_by = AUTOUPDATE_USER
            services.db.update_stack(stack)
        except Exception:
            try:
                await stack_storage.rollback_tree(stack_folder)
            except OSError as rollback_error:
                logger.warning(f"Rollback of stack {stack_id} folder failed: {rollback_error}")
            raise

        await stack_storage.remove_tree_backup(stack_folder)
    finally:
        await asyncio.to_thread(shutil.rmtree, temp_dir, True)

    logger.info(f"Auto-update redeployed stack {stack_id} ({stack.name}) at {commit[:12]}")
    return True


async def resume_autoupdate_jobs(services: StackServices) -> int:
    """
    Re-register auto-update jobs after a restart.

    Job ids from the previous process are meaningless, so every stack with an
    interval gets a fresh job and the new id is persisted.

    Returns:
        Number of jobs started
    """
    started = 0
    for stack in services.db.list_autoupdate_stacks():
        try:
            job_id = await start_autoupdate(stack.id, stack.auto_update.interval, services)
        except SchedulerError as e:
            logger.error(f"Unable to resume auto-update for stack {stack.id}: {e}")
            stack.auto_update.job_id = None
            services.db.update_stack(stack)
            continue

        stack.auto_update.job_id = job_id
        services.db.update_stack(stack)
        started += 1

    if started:
        logger.info(f"Resumed {started} auto-update job(s)")
    return started
