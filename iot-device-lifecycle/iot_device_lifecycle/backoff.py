# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the policies deciding whether, and after what delay, a failed
operation is attempted again"""

import abc
import asyncio
import logging
import random
import sys
import threading
from typing import Iterable, Optional, Tuple, Type
from . import constant
from . import exceptions as exc

logger = logging.getLogger(__name__)

# Failures that are always worth another attempt
TRANSIENT_EXCEPTION_TYPES: Tuple[Type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    exc.ConnectionFailedError,
    exc.ConnectionDroppedError,
    exc.ClientNotReadyError,
)


class RetryPolicy(abc.ABC):
    @abc.abstractmethod
    def should_retry(self, attempt: int, failure: BaseException) -> Tuple[bool, float]:
        """Decide whether to make another attempt after a failure.

        :param int attempt: Zero-based index of the attempt that failed
        :param failure: The exception the attempt failed with

        :returns: Whether to retry, and the delay in seconds to wait before doing so
        """
        pass

    @abc.abstractmethod
    def is_transient(self, failure: BaseException) -> bool:
        """Return whether the failure is worth retrying at all"""
        pass


class ExponentialBackoffRetryPolicy(RetryPolicy):
    """Retry transient failures after an exponentially increasing, jittered delay.

    The delay in milliseconds is ``|2^min(attempt, max_exponent) + jitter|``, with the jitter
    drawn uniformly from [-1000, 1000).
    """

    def __init__(
        self,
        *,
        max_retries: int = sys.maxsize,
        max_exponent: int = constant.DEFAULT_MAX_EXPONENT,
        always_retry: Iterable[Type[BaseException]] = (),
        random_source: Optional[random.Random] = None,
    ) -> None:
        """Initializer for ExponentialBackoffRetryPolicy

        :param int max_retries: Highest attempt index that may still be retried
        :param int max_exponent: Cap on the exponent of the delay
        :param always_retry: Exception types that are retried even though they would
            otherwise not be considered transient
        :param random_source: Source of randomness for the jitter.
            A new :class:`random.Random` is created if not provided.
        :type random_source: :class:`random.Random`
        """
        if max_retries < 0:
            raise ValueError("'max_retries' cannot be negative")
        if max_exponent < 0:
            raise ValueError("'max_exponent' cannot be negative")
        self.max_retries = max_retries
        self.max_exponent = max_exponent
        self.always_retry = tuple(always_retry)
        self._random = random_source or random.Random()
        # random.Random is not guaranteed to be safe across threads
        self._random_lock = threading.Lock()

    def is_transient(self, failure: BaseException) -> bool:
        if isinstance(failure, self.always_retry):
            return True
        if isinstance(failure, TRANSIENT_EXCEPTION_TYPES):
            return True
        # Service errors carry their own classification
        return bool(getattr(failure, "is_transient", False))

    def compute_delay(self, attempt: int) -> float:
        """Return the delay in seconds before the attempt after the given one"""
        with self._random_lock:
            jitter_ms = self._random.random() * 2 * constant.MAX_JITTER_MS - constant.MAX_JITTER_MS
        delay_ms = abs(2 ** min(attempt, self.max_exponent) + jitter_ms)
        return delay_ms / 1000

    def should_retry(self, attempt: int, failure: BaseException) -> Tuple[bool, float]:
        if attempt > self.max_retries:
            logger.info(
                "Attempt {} failed with {!r}. Retries exhausted after {} attempts".format(
                    attempt, failure, self.max_retries
                )
            )
            return (False, 0.0)
        if not self.is_transient(failure):
            logger.info(
                "Attempt {} failed with non-transient {!r}. Not retrying".format(attempt, failure)
            )
            return (False, 0.0)
        delay = self.compute_delay(attempt)
        logger.info(
            "Attempt {} failed with {!r}. Retrying in {:.3f} seconds".format(
                attempt, failure, delay
            )
        )
        return (True, delay)


class NoRetryPolicy(RetryPolicy):
    """Never retry"""

    def is_transient(self, failure: BaseException) -> bool:
        return False

    def should_retry(self, attempt: int, failure: BaseException) -> Tuple[bool, float]:
        return (False, 0.0)
