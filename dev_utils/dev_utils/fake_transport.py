# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""In-memory stand-ins for the transport client, and the connection states it reports"""
import asyncio
import copy
from typing import List, Optional
from iot_device_lifecycle.credentials import DeviceCredential
from iot_device_lifecycle.models import (
    INITIAL_CONNECTION_STATE,
    ConnectionState,
    ConnectionStatus,
    ConnectionStatusChangeReason,
    RecommendedAction,
)
from iot_device_lifecycle.transport import DeviceTransport

FAKE_HOSTNAME = "fake.azure-devices.net"
FAKE_DEVICE_ID = "fake_device"
# base64 of b"fake_key"
FAKE_SHARED_ACCESS_KEY = "ZmFrZV9rZXk="

CONNECTED = ConnectionState(
    ConnectionStatus.CONNECTED,
    ConnectionStatusChangeReason.OK,
    RecommendedAction.PERFORM_NORMALLY,
)
RETRYING = ConnectionState(
    ConnectionStatus.DISCONNECTED_RETRYING,
    ConnectionStatusChangeReason.COMMUNICATION_ERROR,
    RecommendedAction.WAIT_FOR_RETRY_POLICY,
)
RETRY_EXPIRED = ConnectionState(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.RETRY_EXPIRED,
    RecommendedAction.OPEN_CONNECTION,
)
COMMUNICATION_ERROR = ConnectionState(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.COMMUNICATION_ERROR,
    RecommendedAction.OPEN_CONNECTION,
)
BAD_CREDENTIAL = ConnectionState(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.BAD_CREDENTIAL,
    RecommendedAction.QUIT,
)
DEVICE_DISABLED = ConnectionState(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.DEVICE_DISABLED,
    RecommendedAction.QUIT,
)
CLOSED = ConnectionState(
    ConnectionStatus.DISABLED,
    ConnectionStatusChangeReason.CLIENT_CLOSED,
    RecommendedAction.QUIT,
)


class FakeTransport(DeviceTransport):
    """In-memory DeviceTransport.

    Opening succeeds unless failures are queued in `open_failures`, each of which is a
    (ConnectionState, exception) pair reported and raised by one invocation of .open()
    """

    def __init__(self, credential: DeviceCredential) -> None:
        super().__init__(credential)
        self._state = INITIAL_CONNECTION_STATE
        self.open_failures: List = []
        self.open_count = 0
        self.close_count = 0
        self.close_exception: Optional[Exception] = None
        self.send_exceptions: List[Exception] = []
        self.sent_messages: List = []
        self.twin = {"desired": {"$version": 1}, "reported": {}}
        self.get_twin_count = 0
        self.reported_patches: List = []
        self.message_handler = None
        self.desired_property_handler = None

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def emit(self, state: ConnectionState) -> None:
        self._state = state
        if self.on_connection_state_change:
            self.on_connection_state_change(state)

    async def open(self) -> None:
        self.open_count += 1
        if self.open_failures:
            state, e = self.open_failures.pop(0)
            self.emit(state)
            raise e
        self.emit(CONNECTED)

    async def close(self) -> None:
        self.close_count += 1
        self.emit(CLOSED)
        if self.close_exception:
            raise self.close_exception

    async def send_message(self, message) -> None:
        if self.send_exceptions:
            raise self.send_exceptions.pop(0)
        self.sent_messages.append(message)

    async def receive_message(self, timeout=None):
        await asyncio.sleep(timeout or 0)
        return None

    async def get_twin(self):
        self.get_twin_count += 1
        return copy.deepcopy(self.twin)

    async def update_reported_properties(self, patch) -> None:
        self.reported_patches.append(patch)

    async def set_message_received_handler(self, handler) -> None:
        self.message_handler = handler

    async def set_desired_property_update_handler(self, handler) -> None:
        self.desired_property_handler = handler


class FakeTransportFactory:
    """Creates FakeTransports, remembering each, and optionally configuring each before use"""

    def __init__(self) -> None:
        self.created: List[FakeTransport] = []
        self.configure = None

    def __call__(self, credential: DeviceCredential) -> FakeTransport:
        transport = FakeTransport(credential)
        if self.configure:
            self.configure(transport, len(self.created))
        self.created.append(transport)
        return transport


def make_credential(device_id: str = FAKE_DEVICE_ID, key: str = FAKE_SHARED_ACCESS_KEY):
    return DeviceCredential(hostname=FAKE_HOSTNAME, device_id=device_id, shared_access_key=key)
