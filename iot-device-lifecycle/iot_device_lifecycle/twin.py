# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Twin desired property handling, including recovery of updates missed while disconnected"""

import asyncio
import logging
import threading
from typing import Callable, Optional
from . import constant
from .cancellation import CancellationToken
from .custom_typing import ReadinessPredicate, TwinPatch
from .exceptions import OperationCancelled
from .retry import RetryExecutor
from .transport import DeviceTransport

logger = logging.getLogger(__name__)

VERSION_KEY = "$version"


class VersionWatermark:
    """The highest desired properties version that has been applied.

    Never decreases. Safe to use from any thread.
    """

    def __init__(self, initial: int = constant.INITIAL_TWIN_VERSION) -> None:
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def is_ahead(self, version: int) -> bool:
        """Return whether the version is newer than the watermark"""
        with self._lock:
            return version > self._value

    def try_advance(self, version: int) -> bool:
        """Advance the watermark to the version if it is newer.

        :returns: True if the watermark was advanced
        """
        with self._lock:
            if version > self._value:
                self._value = version
                return True
            return False

    def __repr__(self) -> str:
        return "VersionWatermark({})".format(self.value)


def get_patch_version(patch: TwinPatch) -> int:
    """Return the version of a desired properties patch

    :raises: ValueError if the patch has no valid version
    """
    version = patch.get(VERSION_KEY)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValueError("Desired properties have no valid {}".format(VERSION_KEY))
    return version


class TwinReconciler:
    """Applies desired property updates, each version at most once.

    Every update is accepted: the desired properties are reported back as they are.
    """

    def __init__(
        self,
        get_transport: Callable[[], Optional[DeviceTransport]],
        watermark: VersionWatermark,
        executor: RetryExecutor,
        is_ready: ReadinessPredicate,
    ) -> None:
        """
        :param get_transport: Returns the transport currently in use
        :param watermark: The version high-water mark shared with the rest of the application
        :param executor: Executor for twin operations
        :param is_ready: Predicate gating twin operations on connectivity
        """
        self._get_transport = get_transport
        self.watermark = watermark
        self._executor = executor
        self._is_ready = is_ready
        # Serializes reconciliations. Applying a version at most once is up to the watermark
        self._lock = asyncio.Lock()

    def _transport(self) -> DeviceTransport:
        transport = self._get_transport()
        if transport is None:
            # Unreachable while the readiness predicate gates every attempt
            raise RuntimeError("No transport")
        return transport

    async def reconcile(self, token: CancellationToken) -> None:
        """Fetch the twin and apply its desired properties if they are newer than the
        watermark. Otherwise do nothing.
        """

        async def get_twin():
            return await self._transport().get_twin()

        async with self._lock:
            twin = await self._executor.run(
                get_twin, token=token, is_ready=self._is_ready, name="get twin"
            )
            desired = twin["desired"]
            server_version = get_patch_version(desired)
            if self.watermark.is_ahead(server_version):
                logger.info(
                    "Desired properties version {} is ahead of {}. Applying".format(
                        server_version, self.watermark.value
                    )
                )
                await self.on_desired_property_update(desired, token)
            else:
                logger.info(
                    "Desired properties version {} already applied (watermark {})".format(
                        server_version, self.watermark.value
                    )
                )

    async def on_desired_property_update(self, patch: TwinPatch, token: CancellationToken) -> None:
        """Apply a desired properties patch by reporting its properties back, unless its
        version has already been applied.
        """
        version = get_patch_version(patch)
        if not self.watermark.try_advance(version):
            logger.info(
                "Ignoring desired properties version {} (watermark {})".format(
                    version, self.watermark.value
                )
            )
            return
        reported = {k: v for k, v in patch.items() if not k.startswith("$")}
        logger.info("Reporting desired properties version {}: {}".format(version, reported))

        async def report():
            await self._transport().update_reported_properties(reported)

        try:
            await self._executor.run(
                report, token=token, is_ready=self._is_ready, name="update reported properties"
            )
        except OperationCancelled:
            logger.info("Reporting desired properties version {} was cancelled".format(version))
