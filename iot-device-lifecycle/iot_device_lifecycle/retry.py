# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the executor that retries arbitrary asynchronous operations"""

import asyncio
import enum
import logging
from typing import Any, Callable, Optional, cast
from .backoff import RetryPolicy
from .cancellation import CancellationToken
from .custom_typing import AsyncOperation, ReadinessPredicate
from .exceptions import ClientNotReadyError, OperationCancelled

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"


class OperationResult:
    """The outcome of a single attempt of an operation"""

    __slots__ = ("outcome", "value", "failure")

    def __init__(
        self, outcome: Outcome, value: Any = None, failure: Optional[BaseException] = None
    ) -> None:
        self.outcome = outcome
        self.value = value
        self.failure = failure

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(Outcome.SUCCESS, value=value)

    @classmethod
    def transient_failure(cls, failure: BaseException) -> "OperationResult":
        return cls(Outcome.TRANSIENT_FAILURE, failure=failure)

    @classmethod
    def fatal_failure(cls, failure: BaseException) -> "OperationResult":
        return cls(Outcome.FATAL_FAILURE, failure=failure)

    def __repr__(self) -> str:
        return "OperationResult({}, value={!r}, failure={!r})".format(
            self.outcome.name, self.value, self.failure
        )


async def capture(
    operation: AsyncOperation, is_transient: Callable[[BaseException], bool]
) -> OperationResult:
    """Invoke the operation, converting its outcome into an OperationResult.

    This is the only place failures of an attempt are caught. Cancellation is not a
    failure of the attempt, and propagates.
    """
    try:
        value = await operation()
    except (OperationCancelled, asyncio.CancelledError):
        raise
    except Exception as e:
        if is_transient(e):
            return OperationResult.transient_failure(e)
        return OperationResult.fatal_failure(e)
    if isinstance(value, OperationResult):
        return value
    return OperationResult.success(value)


class RetryAttempt:
    """A single iteration of a retry loop"""

    __slots__ = ("attempt_index", "last_failure", "computed_delay")

    def __init__(self, attempt_index: int) -> None:
        self.attempt_index = attempt_index
        self.last_failure: Optional[BaseException] = None
        self.computed_delay: Optional[float] = None

    def __repr__(self) -> str:
        return "RetryAttempt(attempt_index={}, last_failure={!r}, computed_delay={})".format(
            self.attempt_index, self.last_failure, self.computed_delay
        )


class RetryExecutor:
    """Runs asynchronous operations until they succeed, retrying transient failures
    according to a RetryPolicy"""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    async def run(
        self,
        operation: AsyncOperation,
        *,
        token: CancellationToken,
        is_ready: Optional[ReadinessPredicate] = None,
        name: str = "operation",
    ) -> Any:
        """Run an operation until it succeeds.

        While the readiness predicate returns False the operation is not invoked, and the
        skipped iteration does not count as an attempt.

        :param operation: Zero-argument coroutine function to run
        :param token: Token that interrupts the operation in progress and the delays between
            attempts
        :type token: :class:`iot_device_lifecycle.cancellation.CancellationToken`
        :param is_ready: Predicate gating each attempt
        :param str name: Name of the operation, for logging

        :returns: The value the operation returned
        :raises: OperationCancelled if cancellation is requested before the operation succeeds
        :raises: The failure of the final attempt if the operation fails fatally or the
            policy gives up
        """
        attempt = RetryAttempt(0)
        while True:
            token.raise_if_cancellation_requested()
            counted = True
            if is_ready is not None and not is_ready():
                logger.debug(
                    "{}: attempt {} skipped, client is not ready".format(
                        name, attempt.attempt_index
                    )
                )
                counted = False
                result = OperationResult.transient_failure(
                    ClientNotReadyError("Client is not ready for {}".format(name))
                )
            else:
                logger.debug("{}: attempt {} started".format(name, attempt.attempt_index))
                result = await capture(
                    lambda: token.run(operation()), self.policy.is_transient
                )
                logger.debug(
                    "{}: attempt {} ended with {}".format(
                        name, attempt.attempt_index, result.outcome.name
                    )
                )

            if result.outcome is Outcome.SUCCESS:
                logger.info("{} succeeded".format(name))
                return result.value

            failure = cast(BaseException, result.failure)
            attempt.last_failure = failure
            if result.outcome is Outcome.FATAL_FAILURE:
                logger.error("{} failed with non-retryable {!r}".format(name, failure))
                raise failure

            retry, delay = self.policy.should_retry(attempt.attempt_index, failure)
            if not retry:
                logger.error(
                    "{} failed after {} attempt(s). Giving up".format(
                        name, attempt.attempt_index + 1
                    )
                )
                raise failure
            attempt.computed_delay = delay
            logger.debug("{}: {!r}".format(name, attempt))
            await token.sleep(delay)
            if counted:
                attempt = RetryAttempt(attempt.attempt_index + 1)
