"""Periodic supervision of the channel to the relay server."""
from __future__ import annotations

import asyncio
import logging

from peerpair.client.config import ReconnectPolicy
from peerpair.relay.protocols import MessageChannel
from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class ChannelHealthMonitor:
    """Check the liveness of a channel and repair it.

    Every `policy.health_check_interval` seconds the channel is checked. A
    live channel resets the count of consecutive failed checks. Otherwise the
    count is incremented and, once it exceeds `policy.failure_threshold`, the
    channel is reinitialized with
    [`MessageChannel.reinitialize()`][peerpair.relay.protocols.MessageChannel.reinitialize].
    Below the threshold an incremental reconnect is scheduled instead.

    Args:
        channel: Channel to supervise.
        policy: Reconnection policy.
    """

    def __init__(
        self,
        channel: MessageChannel,
        policy: ReconnectPolicy | None = None,
    ) -> None:
        self._channel = channel
        self._policy = ReconnectPolicy() if policy is None else policy
        self._failures = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def consecutive_failures(self) -> int:
        """Number of consecutive failed health checks."""
        return self._failures

    @property
    def running(self) -> bool:
        """Check if the periodic check task is running."""
        return self._task is not None and not self._task.done()

    async def check(self) -> bool:
        """Run a single health check.

        Returns:
            If the channel was live.
        """
        if self._channel.is_live:
            if self._failures > 0:
                logger.info(
                    f'Channel recovered after {self._failures} failed '
                    'health check(s)',
                )
            self._failures = 0
            return True

        self._failures += 1
        if self._failures > self._policy.failure_threshold:
            logger.warning(
                f'Channel failed {self._failures} consecutive health '
                'checks, reinitializing',
            )
            await self._channel.reinitialize()
        else:
            logger.info(
                f'Channel is not live ({self._failures} consecutive failed '
                'health check(s)), scheduling reconnect',
            )
            self._channel.schedule_reconnect()
        return False

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._policy.health_check_interval)
            await self.check()

    def start(self) -> None:
        """Start the periodic health check task.

        This is a no-op if the task is already running.
        """
        if self.running:
            return
        self._task = spawn_guarded_background_task(
            self._run,
            name='channel-health-monitor',
        )

    async def stop(self) -> None:
        """Stop the periodic health check task."""
        if self._task is None:
            return
        await cancel_and_wait(self._task)
        self._task = None
