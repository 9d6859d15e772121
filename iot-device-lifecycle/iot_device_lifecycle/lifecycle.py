# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Ownership of the transport client in use, and recovery from connection status changes.

Connection status notifications from the transport are mapped to an action:

=====================  =====================  ===========================================
status                 reason                 action
=====================  =====================  ===========================================
CONNECTED              any                    reconcile the twin
DISCONNECTED_RETRYING  any                    none (the transport is retrying)
DISABLED               any                    none
DISCONNECTED           BAD_CREDENTIAL         discard the credential, then re-initialize
                                              if any remain, else terminate
DISCONNECTED           DEVICE_DISABLED        terminate
DISCONNECTED           RETRY_EXPIRED          re-initialize (configurable)
DISCONNECTED           COMMUNICATION_ERROR    re-initialize (configurable)
=====================  =====================  ===========================================

Any other combination is logged as an error and otherwise ignored.
"""

import asyncio
import enum
import logging
import threading
from typing import AbstractSet, Callable, Optional, Set
from .backoff import ExponentialBackoffRetryPolicy
from .cancellation import CancellationToken, CancellationTokenSource
from .config import LifecycleConfig
from .credentials import CredentialSet, DeviceCredential
from .custom_typing import FunctionOrCoroutine, TwinPatch
from .exceptions import (
    ClientNotReadyError,
    CredentialError,
    DeviceDisabledError,
    OperationCancelled,
)
from .handle_exceptions import log_task_failure, swallow_unraised_exception
from .models import ConnectionState, ConnectionStatus, ConnectionStatusChangeReason, Message
from .retry import RetryExecutor
from .transport import DeviceTransport
from .twin import TwinReconciler, VersionWatermark

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceCredential], DeviceTransport]


class HandleReference:
    """Atomically swappable reference to the transport client in use.

    Readers observe either the old or the new client, never anything in between.
    """

    def __init__(self) -> None:
        self._handle: Optional[DeviceTransport] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[DeviceTransport]:
        with self._lock:
            return self._handle

    def set(self, handle: Optional[DeviceTransport]) -> Optional[DeviceTransport]:
        """Replace the reference, returning the previous client"""
        with self._lock:
            previous = self._handle
            self._handle = handle
            return previous


class LifecycleContext:
    """State shared by everything participating in the lifecycle of a device connection"""

    def __init__(
        self,
        credentials: CredentialSet,
        cancellation_source: CancellationTokenSource,
        watermark: Optional[VersionWatermark] = None,
    ) -> None:
        self.credentials = credentials
        self.cancellation_source = cancellation_source
        self.handle = HandleReference()
        self.watermark = watermark or VersionWatermark()

    @property
    def token(self) -> CancellationToken:
        return self.cancellation_source.token

    def is_connected(self) -> bool:
        handle = self.handle.get()
        return handle is not None and handle.connection_state.status is ConnectionStatus.CONNECTED


class Action(enum.Enum):
    NONE = "none"
    RECONCILE_TWIN = "reconcile_twin"
    REINITIALIZE = "reinitialize"
    DISCARD_CREDENTIAL = "discard_credential"
    TERMINATE = "terminate"
    UNEXPECTED = "unexpected"


REINITIALIZABLE_REASONS = frozenset(
    [ConnectionStatusChangeReason.RETRY_EXPIRED, ConnectionStatusChangeReason.COMMUNICATION_ERROR]
)


def decide(
    state: ConnectionState, reinitialize_on: AbstractSet[ConnectionStatusChangeReason]
) -> Action:
    """Return the action to take in response to a connection state"""
    status = state.status
    reason = state.reason
    if status is ConnectionStatus.CONNECTED:
        return Action.RECONCILE_TWIN
    elif status in (ConnectionStatus.DISCONNECTED_RETRYING, ConnectionStatus.DISABLED):
        return Action.NONE
    elif status is ConnectionStatus.DISCONNECTED:
        if reason is ConnectionStatusChangeReason.BAD_CREDENTIAL:
            return Action.DISCARD_CREDENTIAL
        elif reason is ConnectionStatusChangeReason.DEVICE_DISABLED:
            return Action.TERMINATE
        elif reason in REINITIALIZABLE_REASONS:
            return Action.REINITIALIZE if reason in reinitialize_on else Action.NONE
    return Action.UNEXPECTED


class ConnectionLifecycleManager:
    """Owns the transport client of a device, replacing it whenever it can no longer recover
    on its own.

    Must be created within a running event loop.
    """

    def __init__(
        self,
        context: LifecycleContext,
        transport_factory: TransportFactory,
        config: Optional[LifecycleConfig] = None,
        message_handler: Optional[FunctionOrCoroutine[[Message], None]] = None,
    ) -> None:
        """
        :param context: The shared lifecycle state
        :type context: :class:`LifecycleContext`
        :param transport_factory: Creates a transport client for a credential
        :param config: Lifecycle options
        :type config: :class:`iot_device_lifecycle.config.LifecycleConfig`
        :param message_handler: Handler for incoming cloud-to-device messages
        """
        self.context = context
        self._transport_factory = transport_factory
        self._config = config or LifecycleConfig()
        self._message_handler = message_handler
        self._event_loop = asyncio.get_running_loop()

        self.executor = RetryExecutor(
            ExponentialBackoffRetryPolicy(
                max_retries=self._config.max_retries,
                max_exponent=self._config.max_exponent,
                always_retry=self._config.always_retry,
            )
        )
        self.twin = TwinReconciler(
            context.handle.get, context.watermark, self.executor, context.is_connected
        )

        # The only gate protecting replacement of the client
        self._initialize_lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()
        # Number of initialization retry loops in progress (at most one is started here)
        self._initializing = 0
        self._reinitialize_pending = False
        self._shut_down = False
        self.fatal_error: Optional[BaseException] = None

    # Initialization #

    def _should_initialize(self) -> bool:
        if not self.context.credentials:
            return False
        handle = self.context.handle.get()
        if handle is None:
            return True
        return handle.connection_state.status in (
            ConnectionStatus.DISCONNECTED,
            ConnectionStatus.DISABLED,
        )

    async def initialize(self, token: CancellationToken) -> None:
        """Create and open a new client from the current credential, unless the client in
        use is still viable. Safe to call concurrently: at most one replacement happens per
        loss of the client.

        :raises: CredentialError if no credentials remain
        :raises: OperationCancelled if cancellation is requested
        :raises: Any failure to create or open the client
        """
        if not self.context.credentials:
            raise CredentialError("No credentials remain")
        if not self._should_initialize():
            logger.debug("Client is viable. Skipping initialization")
            return

        await token.run(self._initialize_lock.acquire())
        replaced = False
        try:
            if self._should_initialize():
                await self._replace_handle(token)
                replaced = True
            else:
                logger.debug("Client was initialized while waiting. Skipping initialization")
        finally:
            self._initialize_lock.release()

        if replaced:
            await self._resubscribe(token)

    async def run_initialization(
        self, token: CancellationToken, executor: Optional[RetryExecutor] = None
    ) -> None:
        """Retry .initialize() until a client is open.

        While this is in progress, requests to re-initialize in response to connection state
        changes are merged into it rather than starting another retry loop.

        :param executor: The executor to retry with. Defaults to that of the manager.
        """
        executor = executor or self.executor

        async def initialize():
            await self.initialize(token)

        self._initializing += 1
        try:
            await executor.run(initialize, token=token, name="initialize")
        finally:
            self._initializing -= 1

    async def _replace_handle(self, token: CancellationToken) -> None:
        previous = self.context.handle.get()
        if previous is not None:
            # The previous client is no longer of interest, even as it closes
            previous.on_connection_state_change = None
            logger.info("Closing previous client {}".format(previous))
            try:
                await token.run(previous.close())
            except CredentialError as e:
                swallow_unraised_exception(
                    e, log_msg="Unauthorized close of previous client ignored", log_lvl="debug"
                )

        credential = self.context.credentials.current()
        if credential is None:
            raise CredentialError("No credentials remain")
        logger.info("Initializing client with {}".format(credential))
        handle = self._transport_factory(credential)

        def on_connection_state_change(state: ConnectionState) -> None:
            self.handle_connection_state_change(state, source=handle)

        handle.on_connection_state_change = on_connection_state_change
        self.context.handle.set(handle)
        await token.run(handle.open())
        logger.info("Client initialized")

    async def _resubscribe(self, token: CancellationToken) -> None:
        async def subscribe():
            handle = self.context.handle.get()
            if handle is None:
                raise ClientNotReadyError("No client")
            if self._message_handler:
                await handle.set_message_received_handler(self._message_handler)
            await handle.set_desired_property_update_handler(self._on_desired_property_update)

        await self.executor.run(
            subscribe, token=token, is_ready=self.context.is_connected, name="subscribe"
        )

    async def _on_desired_property_update(self, patch: TwinPatch) -> None:
        await self.twin.on_desired_property_update(patch, self.context.token)

    # Connection State #

    def handle_connection_state_change(
        self, state: ConnectionState, source: Optional[DeviceTransport] = None
    ) -> None:
        """Respond to a connection state reported by a transport client.

        Safe to call from any thread. Returns immediately: the response happens in a
        background task.
        """
        self._event_loop.call_soon_threadsafe(self._spawn_state_change_task, state, source)

    def _spawn_state_change_task(
        self, state: ConnectionState, source: Optional[DeviceTransport]
    ) -> None:
        if self._shut_down:
            logger.debug("Ignoring {} after shutdown".format(state))
            return
        task = asyncio.ensure_future(self._on_connection_state_change(state, source))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(log_task_failure)

    async def _on_connection_state_change(
        self, state: ConnectionState, source: Optional[DeviceTransport]
    ) -> None:
        if source is not None and source is not self.context.handle.get():
            logger.debug("Ignoring {} from a replaced client".format(state))
            return

        action = decide(state, self._config.reinitialize_on)
        if action is Action.UNEXPECTED:
            logger.error("Unexpected connection state {}. Taking no action".format(state))
            return
        logger.info("{}: {}".format(state, action.name))

        token = self.context.token
        try:
            if action is Action.RECONCILE_TWIN:
                await self.twin.reconcile(token)
            elif action is Action.REINITIALIZE:
                await self._reinitialize(token)
            elif action is Action.DISCARD_CREDENTIAL:
                credential = source.credential if source is not None else None
                if self.context.credentials.discard(credential):
                    await self._reinitialize(token)
                else:
                    self._terminate(CredentialError("All credentials were rejected"))
            elif action is Action.TERMINATE:
                self._terminate(DeviceDisabledError("Device is disabled"))
        except OperationCancelled:
            logger.debug("Response to {} was cancelled".format(state))

    async def _reinitialize(self, token: CancellationToken) -> None:
        if self._initializing:
            # Clients created by the loop in progress report their own failures to open
            logger.debug("Initialization already in progress. Not starting another")
            self._reinitialize_pending = True
            return

        while True:
            self._reinitialize_pending = False
            try:
                await self.run_initialization(token)
            except (CredentialError, DeviceDisabledError) as e:
                # The rejecting client reports the cause through its connection state
                logger.info("Initialization failed with {!r}".format(e))
                if self._reinitialize_pending:
                    logger.debug("Re-initialization was requested meanwhile. Retrying")
                    continue
            return

    def _terminate(self, e: BaseException) -> None:
        if self.fatal_error is None:
            logger.error("Terminating: {}".format(e))
            self.fatal_error = e
        self.context.cancellation_source.cancel()

    # Shutdown #

    async def shutdown(self) -> None:
        """Stop responding to connection state changes and close the client in use.

        The close is bounded by its own timeout, as the shared cancellation has most likely
        already been requested. Only the first invocation has any effect.
        """
        if self._shut_down:
            return
        self._shut_down = True

        tasks = list(self._background_tasks)
        if tasks:
            logger.debug("Cancelling {} background task(s)".format(len(tasks)))
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)

        handle = self.context.handle.get()
        if handle is None:
            return
        handle.on_connection_state_change = None
        source = CancellationTokenSource(timeout=self._config.close_timeout)
        try:
            logger.info("Closing client {}".format(handle))
            await source.token.run(handle.close())
        except OperationCancelled:
            logger.warning("Closing the client timed out")
        except CredentialError as e:
            swallow_unraised_exception(
                e, log_msg="Unauthorized close of client ignored", log_lvl="debug"
            )
        finally:
            source.dispose()
