# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Define IoT device lifecycle exceptions to be shared across the package"""
from typing import Optional


# Connection Exceptions
class ConnectionFailedError(Exception):
    """Represents a failure to establish a connection"""

    pass


class ConnectionDroppedError(Exception):
    """Represents an established connection being lost while an operation was in progress"""

    pass


class ClientNotReadyError(Exception):
    """Represents an operation attempted while the client is not currently usable
    (e.g. mid-reconnect or mid-replacement)"""

    pass


class CredentialError(Exception):
    """Represents a failure from an invalid or unauthorized auth credential"""

    pass


class DeviceDisabledError(Exception):
    """Represents the device identity being disabled or removed on the IoT Hub"""

    pass


class MQTTError(Exception):
    """Represents a failure with a Paho-given error rc code"""

    def __init__(self, rc: int, message: Optional[str] = None) -> None:
        self.rc = rc
        super().__init__(message or "MQTT operation failed with rc {}".format(rc))


# Service Exceptions
class IoTHubError(Exception):
    """Represents a failure reported by IoT Hub"""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        """Throttling and server-side failures are worth trying again"""
        return self.status is not None and (self.status == 429 or self.status >= 500)


# Lifecycle Exceptions
class OperationCancelled(Exception):
    """Represents an operation or delay that was aborted because cancellation was requested.

    This is the normal shutdown path and is not an application error.
    """

    pass
