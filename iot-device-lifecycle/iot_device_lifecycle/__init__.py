""" IoT Device Lifecycle Library

This library keeps an IoT device connected to IoT Hub: it replaces the device client when
it can no longer recover on its own, falls back through alternate credentials, retries
transient failures with jittered exponential backoff, and recovers twin desired property
updates missed while disconnected.
"""

from .application import DeviceApplication  # noqa: F401
from .backoff import ExponentialBackoffRetryPolicy, RetryPolicy  # noqa: F401
from .cancellation import CancellationToken, CancellationTokenSource  # noqa: F401
from .config import LifecycleConfig, ProxyOptions, TransportConfig  # noqa: F401
from .credentials import CredentialSet, DeviceCredential  # noqa: F401
from .exceptions import (  # noqa: F401
    ClientNotReadyError,
    ConnectionDroppedError,
    ConnectionFailedError,
    CredentialError,
    DeviceDisabledError,
    IoTHubError,
    MQTTError,
    OperationCancelled,
)
from .lifecycle import ConnectionLifecycleManager, LifecycleContext  # noqa: F401
from .models import (  # noqa: F401
    ConnectionState,
    ConnectionStatus,
    ConnectionStatusChangeReason,
    Message,
    RecommendedAction,
)
from .mqtt_transport import MQTTDeviceTransport  # noqa: F401
from .retry import RetryExecutor  # noqa: F401
from .transport import DeviceTransport  # noqa: F401
from .twin import TwinReconciler, VersionWatermark  # noqa: F401
from . import models  # noqa: F401
