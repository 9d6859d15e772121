# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines the capabilities the connection lifecycle requires of a transport"""

import abc
from typing import Callable, Optional
from .credentials import DeviceCredential
from .custom_typing import FunctionOrCoroutine, Twin, TwinPatch
from .models import ConnectionState, ConnectionStatus, Message

ConnectionStateChangeCallback = Callable[[ConnectionState], None]


class DeviceTransport(abc.ABC):
    """A client connecting a single device identity to IoT Hub.

    Connectivity changes are reported through ``on_connection_state_change``, which may be
    invoked from any thread and must not block.
    """

    def __init__(self, credential: DeviceCredential) -> None:
        self.credential = credential
        self.on_connection_state_change: Optional[ConnectionStateChangeCallback] = None

    @property
    @abc.abstractmethod
    def connection_state(self) -> ConnectionState:
        """The most recently reported ConnectionState"""
        pass

    @property
    def connected(self) -> bool:
        return self.connection_state.status is ConnectionStatus.CONNECTED

    @abc.abstractmethod
    async def open(self) -> None:
        """Connect to IoT Hub. Has no effect if already open.

        :raises: ConnectionFailedError if a connection could not be established
        :raises: CredentialError if the credential was rejected
        :raises: DeviceDisabledError if the device identity is disabled
        """
        pass

    @abc.abstractmethod
    async def close(self) -> None:
        """Disconnect from IoT Hub and stop reconnecting. Has no effect if already closed."""
        pass

    @abc.abstractmethod
    async def send_message(self, message: Message) -> None:
        """Send a telemetry message to IoT Hub"""
        pass

    @abc.abstractmethod
    async def receive_message(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Receive a cloud-to-device message, if no handler is set.

        :returns: The next message, or None if none arrived within the timeout
        """
        pass

    @abc.abstractmethod
    async def get_twin(self) -> Twin:
        """Retrieve the full twin, including the desired properties "$version" """
        pass

    @abc.abstractmethod
    async def update_reported_properties(self, patch: TwinPatch) -> None:
        """Update the reported properties of the twin"""
        pass

    @abc.abstractmethod
    async def set_message_received_handler(
        self, handler: Optional[FunctionOrCoroutine[[Message], None]]
    ) -> None:
        """Set the handler invoked with every incoming cloud-to-device message.
        Requires a connection, as enabling the feature subscribes on the service.
        """
        pass

    @abc.abstractmethod
    async def set_desired_property_update_handler(
        self, handler: Optional[FunctionOrCoroutine[[TwinPatch], None]]
    ) -> None:
        """Set the handler invoked with every desired properties patch.
        Requires a connection, as enabling the feature subscribes on the service.
        """
        pass
