"""
Unit tests for Swarm service updates.

Tests verify:
- Updates re-inspect the service and submit with the fresh version index
- Digest-pinned and tag-only images, each with its own marker label
- Existing container-spec labels survive
- Fallback failures surface as FallbackFailure
- Rollout verification converges or times out within timeout plus one interval
- The stop signal ends the wait promptly, even during a hung task listing
"""

import asyncio
import logging
import threading
import time

import pytest
from docker.errors import APIError

from updates.errors import FallbackFailure, UpdateSubmissionError
from updates.service_updater import (
    FALLBACK_MARKER_LABEL,
    UPDATE_MARKER_LABEL,
    SwarmServiceUpdater,
)
from updates.types import RolloutVerification

DIGEST_NEW = "sha256:" + "b" * 64


def running_task(image, state="running"):
    return {
        "Status": {"State": state},
        "Spec": {"ContainerSpec": {"Image": image}},
    }


@pytest.fixture
def updater(mock_docker_client, credential, stop_event):
    return SwarmServiceUpdater(
        mock_docker_client,
        credential,
        stop_event,
        verify_timeout=1.0,
        verify_interval=0.01
    )


@pytest.mark.unit
class TestUpdateToDigest:
    """Tests for digest-pinned updates"""

    @pytest.mark.asyncio
    async def test_submits_pinned_image_with_fresh_version(self, updater, mock_docker_client, make_workload):
        """Should use the version from a fresh inspect, not the enumerated one"""
        workload = make_workload(version=41)

        await updater.update_to_digest(workload, DIGEST_NEW)

        mock_docker_client.api.inspect_service.assert_called_once_with("svc123")
        args, kwargs = mock_docker_client.api.update_service.call_args
        assert args == ("svc123", 42)
        assert kwargs["fetch_current_spec"] is True
        container_spec = kwargs["task_template"]["ContainerSpec"]
        assert container_spec["Image"] == f"ghcr.io/acme/web:latest@{DIGEST_NEW}"
        assert UPDATE_MARKER_LABEL in container_spec["Labels"]
        assert FALLBACK_MARKER_LABEL not in container_spec["Labels"]

    @pytest.mark.asyncio
    async def test_logs_version_moved_since_enumeration(self, updater, make_workload, caplog):
        caplog.set_level(logging.DEBUG, logger="updates.service_updater")

        await updater.update_to_digest(make_workload(version=41), DIGEST_NEW)

        assert "moved from version 41 to 42" in caplog.text

    @pytest.mark.asyncio
    async def test_preserves_existing_labels_and_template(self, updater, mock_docker_client, make_workload):
        await updater.update_to_digest(make_workload(), DIGEST_NEW)

        task_template = mock_docker_client.api.update_service.call_args.kwargs["task_template"]
        assert task_template["ContainerSpec"]["Labels"]["com.example.team"] == "platform"
        assert task_template["RestartPolicy"] == {"Condition": "any"}

    @pytest.mark.asyncio
    async def test_does_not_mutate_inspected_spec(self, updater, mock_docker_client, make_workload):
        """Should deep-copy the task template before editing it"""
        inspected = mock_docker_client.api.inspect_service.return_value

        await updater.update_to_digest(make_workload(), DIGEST_NEW)

        labels = inspected["Spec"]["TaskTemplate"]["ContainerSpec"]["Labels"]
        assert UPDATE_MARKER_LABEL not in labels

    @pytest.mark.asyncio
    async def test_refused_update_raises_submission_error(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.update_service.side_effect = APIError("update out of sequence")

        with pytest.raises(UpdateSubmissionError) as exc_info:
            await updater.update_to_digest(make_workload(), DIGEST_NEW)

        assert not isinstance(exc_info.value, FallbackFailure)
        assert exc_info.value.service == "web"

    @pytest.mark.asyncio
    async def test_failed_inspect_raises_submission_error(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.inspect_service.side_effect = APIError("service not found")

        with pytest.raises(UpdateSubmissionError):
            await updater.update_to_digest(make_workload(), DIGEST_NEW)

        mock_docker_client.api.update_service.assert_not_called()


@pytest.mark.unit
class TestUpdateByTag:
    """Tests for the tag-only fallback"""

    @pytest.mark.asyncio
    async def test_submits_tag_without_digest(self, updater, mock_docker_client, make_workload):
        """Should strip the digest and use the fallback marker label"""
        await updater.update_by_tag(make_workload())

        args, kwargs = mock_docker_client.api.update_service.call_args
        assert args == ("svc123", 42)
        container_spec = kwargs["task_template"]["ContainerSpec"]
        assert container_spec["Image"] == "ghcr.io/acme/web:latest"
        assert FALLBACK_MARKER_LABEL in container_spec["Labels"]

    @pytest.mark.asyncio
    async def test_failure_raises_fallback_failure(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.update_service.side_effect = APIError("rejected")

        with pytest.raises(FallbackFailure):
            await updater.update_by_tag(make_workload())


@pytest.mark.unit
class TestPullImage:
    """Tests for best-effort pulls"""

    @pytest.mark.asyncio
    async def test_pulls_tag_with_credentials(self, updater, mock_docker_client, make_workload):
        result = await updater.pull_image(make_workload().image)

        assert result is True
        mock_docker_client.images.pull.assert_called_once_with(
            "ghcr.io/acme/web",
            tag="latest",
            auth_config={"username": "octocat", "password": "ghp_secret123"}
        )

    @pytest.mark.asyncio
    async def test_pull_failure_is_not_fatal(self, updater, mock_docker_client, make_workload):
        """Should log and return False instead of raising"""
        mock_docker_client.images.pull.side_effect = APIError("pull access denied")

        result = await updater.pull_image(make_workload().image)

        assert result is False


@pytest.mark.unit
class TestWaitForRollout:
    """Tests for rollout verification"""

    @pytest.mark.asyncio
    async def test_converges_when_task_runs_digest(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.tasks.return_value = [
            running_task(f"ghcr.io/acme/web:latest@{DIGEST_NEW}"),
        ]

        result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)

        assert result is RolloutVerification.CONVERGED
        mock_docker_client.api.tasks.assert_called_with(
            filters={"service": "web", "desired-state": "running"}
        )

    @pytest.mark.asyncio
    async def test_converges_after_a_few_polls(self, updater, mock_docker_client, make_workload):
        """Should keep polling until a running task reports the digest"""
        mock_docker_client.api.tasks.side_effect = [
            [],
            [running_task(f"ghcr.io/acme/web:latest@{DIGEST_NEW}", state="preparing")],
            [running_task(f"ghcr.io/acme/web:latest@{DIGEST_NEW}")],
        ]

        result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)

        assert result is RolloutVerification.CONVERGED
        assert mock_docker_client.api.tasks.call_count == 3

    @pytest.mark.asyncio
    async def test_times_out_when_old_digest_keeps_running(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.tasks.return_value = [
            running_task("ghcr.io/acme/web:latest@sha256:" + "a" * 64),
        ]

        started = time.monotonic()
        result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)
        elapsed = time.monotonic() - started

        assert result is RolloutVerification.TIMED_OUT
        assert updater.verify_timeout <= elapsed < updater.verify_timeout + updater.verify_interval + 0.5

    @pytest.mark.asyncio
    async def test_task_listing_errors_do_not_abort_wait(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.tasks.side_effect = [
            APIError("temporary failure"),
            [running_task(f"ghcr.io/acme/web:latest@{DIGEST_NEW}")],
        ]

        result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)

        assert result is RolloutVerification.CONVERGED

    @pytest.mark.asyncio
    async def test_stop_signal_cancels_wait_promptly(self, mock_docker_client, credential, stop_event, make_workload):
        """Should return well before the timeout once stop is requested"""
        updater = SwarmServiceUpdater(
            mock_docker_client, credential, stop_event, verify_timeout=30, verify_interval=5
        )
        mock_docker_client.api.tasks.return_value = []
        asyncio.get_running_loop().call_later(0.05, stop_event.set)

        started = time.monotonic()
        result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)

        assert result is RolloutVerification.CANCELLED
        assert time.monotonic() - started < 2

    @pytest.mark.asyncio
    async def test_stop_signal_interrupts_hung_task_listing(self, mock_docker_client, credential, stop_event, make_workload):
        """Should not wait for a blocked tasks call once stop is requested"""
        updater = SwarmServiceUpdater(
            mock_docker_client, credential, stop_event, verify_timeout=30, verify_interval=5
        )
        release = threading.Event()
        mock_docker_client.api.tasks.side_effect = lambda **kwargs: release.wait(5) and []
        asyncio.get_running_loop().call_later(0.05, stop_event.set)

        started = time.monotonic()
        try:
            result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert result is RolloutVerification.CANCELLED
        assert elapsed < 1

    @pytest.mark.asyncio
    async def test_hung_task_listing_is_bounded_by_one_interval(self, mock_docker_client, credential, stop_event, make_workload):
        """Should give up on a blocked tasks call within timeout plus one interval"""
        updater = SwarmServiceUpdater(
            mock_docker_client, credential, stop_event, verify_timeout=0.2, verify_interval=0.1
        )
        release = threading.Event()
        mock_docker_client.api.tasks.side_effect = lambda **kwargs: release.wait(5) and []

        started = time.monotonic()
        try:
            result = await updater.wait_for_rollout(make_workload(), DIGEST_NEW)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert result is RolloutVerification.TIMED_OUT
        assert elapsed < 0.2 + 0.1 + 0.5


@pytest.mark.unit
class TestIsRunningDigest:
    """Tests for the no-drift task cross-check"""

    @pytest.mark.asyncio
    async def test_none_without_running_tasks(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.tasks.return_value = [
            running_task(f"ghcr.io/acme/web:latest@{DIGEST_NEW}", state="shutdown"),
        ]

        assert await updater.is_running_digest(make_workload(), DIGEST_NEW) is None

    @pytest.mark.asyncio
    async def test_false_when_running_other_digest(self, updater, mock_docker_client, make_workload):
        mock_docker_client.api.tasks.return_value = [running_task("ghcr.io/acme/web:latest")]

        assert await updater.is_running_digest(make_workload(), DIGEST_NEW) is False
