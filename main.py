#!/usr/bin/env python3
"""
swarm-patrol - Image Drift Detector and Reconciler

Watches Docker Swarm services (or standalone containers when the engine is
not a Swarm manager) whose images live under a GHCR namespace, and pins
services to the digest currently published for their tag.
"""

import asyncio
import logging
import signal
import sys

import aiohttp
import docker
from docker.errors import DockerException

from config.settings import PatrolConfig, load_env_file, setup_logging
from orchestration import WorkloadDiscovery, detect_mode, OrchestrationMode
from updates.errors import ConfigurationError
from updates.reconciler import Reconciler
from updates.registry_adapter import RegistryAdapter
from updates.scheduler import PollScheduler
from updates.service_updater import SwarmServiceUpdater
from utils.async_docker import async_docker_call

logger = logging.getLogger("swarm-patrol")


async def registry_login(client: docker.DockerClient, config: PatrolConfig) -> bool:
    """Log the Docker engine into the registry so pulls are authenticated. Best effort."""
    try:
        await async_docker_call(
            client.login,
            username=config.username,
            password=config.token,
            registry=config.registry_host
        )
        logger.info(f"Logged in to {config.registry_host} as {config.username}")
        return True
    except Exception as e:
        logger.warning(f"Registry login to {config.registry_host} failed, continuing: {e}")
        return False


def install_signal_handlers(scheduler: PollScheduler):
    """Route SIGINT/SIGTERM to the scheduler's stop signal."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Not available on Windows event loops; Ctrl+C still raises KeyboardInterrupt
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")


async def main(config: PatrolConfig) -> int:
    """Wire the components together and poll until stopped."""
    logger.info(f"Starting swarm-patrol with settings: {config.redacted()}")

    try:
        client = docker.from_env()
    except DockerException as e:
        logger.critical(f"Cannot connect to Docker engine: {e}")
        return 1

    stop_event = asyncio.Event()

    try:
        await registry_login(client, config)

        async with aiohttp.ClientSession() as session:
            mode = await detect_mode(client)
            logger.info(f"Docker Swarm mode: {mode is OrchestrationMode.CLUSTERED}")

            registry = RegistryAdapter(
                config.credential,
                session=session,
                timeout=config.registry_timeout,
                confirm_digest=config.verify_digest
            )
            updater = SwarmServiceUpdater(
                client,
                config.credential,
                stop_event,
                verify_timeout=config.verify_timeout,
                verify_interval=config.verify_interval
            )
            scheduler = PollScheduler(
                discovery=WorkloadDiscovery(client, config.namespace),
                reconciler=Reconciler(registry, updater, stop_event),
                mode=mode,
                interval=config.poll_interval,
                stop_event=stop_event
            )

            install_signal_handlers(scheduler)
            await scheduler.run()
    finally:
        client.close()

    logger.info("swarm-patrol stopped")
    return 0


def run() -> int:
    """Console entrypoint. Returns the process exit status."""
    load_env_file()

    try:
        config = PatrolConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.critical(f"Invalid configuration: {e}")
        return 1

    setup_logging(config.log_level, config.log_dir, secrets=[config.token])

    try:
        return asyncio.run(main(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(run())
