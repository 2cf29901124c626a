"""
Unit tests for git auto-update jobs.

Tests verify:
- Nothing is deployed when the reference didn't move
- Changed references are cloned, deployed, then copied to the durable folder
- Deploy failures leave the durable folder and the stored commit alone
- Jobs of deleted stacks retire themselves
- Jobs are re-registered on startup with fresh ids
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployment.autoupdate import (
    AUTOUPDATE_USER,
    StackServices,
    redeploy_when_changed,
    resume_autoupdate_jobs,
    start_autoupdate,
    stop_autoupdate,
)
from deployment.kube_deployer import KubeDeployError
from scheduler import JobScheduler

OLD_SHA = "a" * 40
NEW_SHA = "b" * 40


@pytest.fixture
def git_service():
    mock = MagicMock()
    mock.latest_commit_id = AsyncMock(return_value=NEW_SHA)

    async def clone(url, ref, destination, username, password, tls_skip_verify):
        target = Path(destination) / "deploy"
        target.mkdir(parents=True, exist_ok=True)
        (target / "app.yml").write_text("kind: Deployment")
        return NEW_SHA
    mock.clone = AsyncMock(side_effect=clone)
    return mock


@pytest.fixture
def services(test_db, git_service):
    kube_factory = MagicMock()
    kube_factory.get_client.return_value = MagicMock(name="kube")
    deployer = MagicMock()
    deployer.deploy = AsyncMock(return_value=["Deployment/api"])
    return StackServices(
        db=test_db,
        scheduler=JobScheduler(),
        kube_factory=kube_factory,
        deployer=deployer,
        git_service=git_service,
    )


class TestRedeployWhenChanged:
    """Tests for the auto-update job body"""

    @pytest.mark.asyncio
    async def test_unchanged_reference(self, services, git_stack, git_service):
        """Same commit means no clone and no deploy"""
        git_service.latest_commit_id.return_value = OLD_SHA

        assert await redeploy_when_changed(git_stack.id, services) is False

        git_service.latest_commit_id.assert_awaited_once_with(
            "https://git.example.com/org/api.git", "refs/heads/main", "u", "old", False,
        )
        git_service.clone.assert_not_called()
        services.deployer.deploy.assert_not_called()

    @pytest.mark.asyncio
    async def test_changed_reference_redeploys(self, services, git_stack, test_db, temp_stacks_dir):
        """A moved reference is deployed from the clone and recorded"""
        seen = {}

        async def deploy(kube, stack, labels):
            seen['project_path'] = stack.project_path
            seen['kind'] = labels.kind
            return ["Deployment/api"]
        services.deployer.deploy.side_effect = deploy

        assert await redeploy_when_changed(git_stack.id, services) is True

        stored = test_db.get_stack(git_stack.id)
        stack_dir = temp_stacks_dir / str(git_stack.id)
        assert seen['kind'] == "git"
        assert seen['project_path'] != str(stack_dir)
        assert not Path(seen['project_path']).exists()
        assert stored.git_config.config_hash == NEW_SHA
        assert stored.updated_by == AUTOUPDATE_USER
        assert stored.project_path == str(stack_dir)
        assert (stack_dir / "deploy" / "app.yml").read_text() == "kind: Deployment"
        assert sorted(p.name for p in temp_stacks_dir.iterdir()) == [str(git_stack.id)]

    @pytest.mark.asyncio
    async def test_deploy_failure_keeps_previous_state(self, services, git_stack, test_db, temp_stacks_dir):
        """Deploy errors propagate and nothing durable changes"""
        stack_dir = temp_stacks_dir / str(git_stack.id) / "deploy"
        stack_dir.mkdir(parents=True)
        (stack_dir / "app.yml").write_text("previous")
        services.deployer.deploy.side_effect = KubeDeployError("Forbidden")

        with pytest.raises(KubeDeployError):
            await redeploy_when_changed(git_stack.id, services)

        assert (stack_dir / "app.yml").read_text() == "previous"
        assert test_db.get_stack(git_stack.id).git_config.config_hash == OLD_SHA

    @pytest.mark.asyncio
    async def test_deleted_stack_retires_job(self, services):
        """A job whose stack is gone stops itself"""
        services.scheduler = MagicMock()
        services.scheduler.get_job.return_value = MagicMock(job_id="j9")

        assert await redeploy_when_changed(999, services) is False

        services.scheduler.stop_nowait.assert_called_once_with(999, "j9")


class TestJobRegistration:
    """Tests for start/stop/resume"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services, git_stack):
        job_id = await start_autoupdate(git_stack.id, "1h", services)
        assert services.scheduler.has_job(git_stack.id, job_id)

        await stop_autoupdate(git_stack.id, job_id, services.scheduler)
        assert services.scheduler.get_job(git_stack.id) is None

    @pytest.mark.asyncio
    async def test_stop_without_job_id(self, services):
        """Stacks without a job id have nothing to stop"""
        services.scheduler = MagicMock()
        await stop_autoupdate(1, None, services.scheduler)
        services.scheduler.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_resume_registers_fresh_jobs(self, services, git_stack, test_db):
        """Stored job ids are replaced by live ones on startup"""
        broken = test_db.get_stack(git_stack.id)
        broken.id = 0
        broken.name = "broken"
        broken.auto_update.interval = "bogus"
        broken = test_db.create_stack(broken)

        started = await resume_autoupdate_jobs(services)

        assert started == 1
        resumed = test_db.get_stack(git_stack.id)
        assert resumed.auto_update.job_id != "j1"
        assert services.scheduler.has_job(git_stack.id, resumed.auto_update.job_id)
        assert test_db.get_stack(broken.id).auto_update.job_id is None
        await services.scheduler.shutdown()
