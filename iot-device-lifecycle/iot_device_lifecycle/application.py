# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""A device application sending telemetry for as long as it runs, recovering from
connection loss along the way"""

import json
import logging
import random
from typing import Optional
from . import constant
from .backoff import ExponentialBackoffRetryPolicy
from .cancellation import CancellationToken, CancellationTokenSource
from .config import LifecycleConfig, TransportConfig
from .credentials import CredentialSet
from .exceptions import (
    ClientNotReadyError,
    CredentialError,
    DeviceDisabledError,
    OperationCancelled,
)
from .lifecycle import ConnectionLifecycleManager, LifecycleContext, TransportFactory
from .models import Message
from .mqtt_transport import MQTTDeviceTransport
from .retry import RetryExecutor

logger = logging.getLogger(__name__)


class DeviceApplication:
    def __init__(
        self,
        credentials: CredentialSet,
        *,
        transport_factory: Optional[TransportFactory] = None,
        config: Optional[LifecycleConfig] = None,
        transport_config: Optional[TransportConfig] = None,
        random_source: Optional[random.Random] = None,
    ) -> None:
        """Initializer for DeviceApplication

        :param credentials: Candidate credentials, in order of preference
        :type credentials: :class:`iot_device_lifecycle.credentials.CredentialSet`
        :param transport_factory: Creates a transport client for a credential.
            Creates an :class:`MQTTDeviceTransport` if not provided.
        :param config: Lifecycle options
        :type config: :class:`iot_device_lifecycle.config.LifecycleConfig`
        :param transport_config: Options for the default transport. Ignored if a
            transport_factory is provided.
        :type transport_config: :class:`iot_device_lifecycle.config.TransportConfig`
        :param random_source: Source of the simulated telemetry readings
        """
        self.credentials = credentials
        self.config = config or LifecycleConfig()
        if transport_factory is None:

            def transport_factory(credential):
                return MQTTDeviceTransport(credential, transport_config)

        self._transport_factory = transport_factory
        self._random = random_source or random.Random()
        self._message_count = 0
        self.manager: Optional[ConnectionLifecycleManager] = None

    async def run(self, duration: Optional[float] = None) -> None:
        """Connect and send telemetry until the duration elapses, or forever if no duration
        is given.

        :param float duration: Seconds to run for

        :raises: CredentialError if every credential was rejected
        :raises: DeviceDisabledError if the device identity is disabled
        """
        source = CancellationTokenSource(timeout=duration)
        context = LifecycleContext(self.credentials, source)
        manager = ConnectionLifecycleManager(
            context,
            self._transport_factory,
            self.config,
            message_handler=self.on_message_received,
        )
        self.manager = manager
        token = source.token

        # A rejected credential is resolved by the manager in response to the connection
        # state, so opening keeps trying until there are no credentials left
        open_executor = RetryExecutor(
            ExponentialBackoffRetryPolicy(
                max_retries=self.config.max_retries,
                max_exponent=self.config.max_exponent,
                always_retry=(CredentialError,) + self.config.always_retry,
            )
        )

        try:
            await manager.run_initialization(token, open_executor)
            await self._send_telemetry(manager, token)
        except OperationCancelled:
            logger.info("Device application stopped")
        except (CredentialError, DeviceDisabledError):
            raise
        except Exception:
            logger.error("Device application failed", exc_info=True)
            raise
        finally:
            await manager.shutdown()
            source.dispose()

        if manager.fatal_error is not None:
            raise manager.fatal_error

    async def _send_telemetry(
        self, manager: ConnectionLifecycleManager, token: CancellationToken
    ) -> None:
        while True:
            message = self.create_telemetry_message()

            async def send():
                handle = manager.context.handle.get()
                if handle is None:
                    raise ClientNotReadyError("No client")
                await handle.send_message(message)

            logger.info("Sending message {}: {}".format(message.message_id, message))
            await manager.executor.run(
                send, token=token, is_ready=manager.context.is_connected, name="send telemetry"
            )
            await token.sleep(self.config.telemetry_interval)

    def create_telemetry_message(self) -> Message:
        """Return a message with simulated temperature and humidity readings"""
        self._message_count += 1
        temperature = self._random.randint(20, 34)
        humidity = self._random.randint(60, 79)
        message = Message(
            json.dumps({"temperature": temperature, "humidity": humidity}),
            content_encoding="utf-8",
            content_type="application/json",
            message_id=str(self._message_count),
        )
        message.custom_properties["temperatureAlert"] = str(
            temperature > constant.TEMPERATURE_ALERT_THRESHOLD
        ).lower()
        return message

    def on_message_received(self, message: Message) -> None:
        logger.info(
            "Received message {}: {} (properties: {})".format(
                message.message_id, message, message.custom_properties
            )
        )
