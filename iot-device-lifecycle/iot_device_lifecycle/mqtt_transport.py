# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""A DeviceTransport for IoT Hub using MQTT 3.1.1 via the Paho client"""

import asyncio
import functools
import json
import logging
import ssl
from typing import Any, Dict, Optional, Set, Union, cast
import janus
import paho.mqtt.client as mqtt  # type: ignore
from . import constant
from . import mqtt_topic
from .backoff import ExponentialBackoffRetryPolicy, NoRetryPolicy, RetryPolicy
from .config import TransportConfig
from .credentials import DeviceCredential
from .custom_typing import FunctionOrCoroutine, Twin, TwinPatch
from .exceptions import (
    ClientNotReadyError,
    ConnectionDroppedError,
    ConnectionFailedError,
    CredentialError,
    DeviceDisabledError,
    IoTHubError,
    MQTTError,
)
from .handle_exceptions import handle_background_exception, log_task_failure
from .models import (
    INITIAL_CONNECTION_STATE,
    ConnectionState,
    ConnectionStatus,
    ConnectionStatusChangeReason,
    Message,
    RecommendedAction,
)
from .request_response import RequestLedger, Response
from .transport import DeviceTransport

logger = logging.getLogger(__name__)

# NOTE: Paho can return a lot of rc values. However, most of them shouldn't happen.
# Here are the ones that we can expect for each method.
expected_subscribe_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN]
expected_publish_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_QUEUE_SIZE]
expected_on_connect_rc = [
    mqtt.CONNACK_ACCEPTED,
    mqtt.CONNACK_REFUSED_PROTOCOL_VERSION,
    mqtt.CONNACK_REFUSED_IDENTIFIER_REJECTED,
    mqtt.CONNACK_REFUSED_SERVER_UNAVAILABLE,
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]

# CONNACK results that mean the credential will never be accepted
credential_rejected_rc = [
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]


def _connection_state(
    status: ConnectionStatus,
    reason: ConnectionStatusChangeReason,
    recommended_action: RecommendedAction,
) -> ConnectionState:
    return ConnectionState(status, reason, recommended_action)


CONNECTED_STATE = _connection_state(
    ConnectionStatus.CONNECTED,
    ConnectionStatusChangeReason.OK,
    RecommendedAction.PERFORM_NORMALLY,
)
RETRYING_STATE = _connection_state(
    ConnectionStatus.DISCONNECTED_RETRYING,
    ConnectionStatusChangeReason.COMMUNICATION_ERROR,
    RecommendedAction.WAIT_FOR_RETRY_POLICY,
)
RETRY_EXPIRED_STATE = _connection_state(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.RETRY_EXPIRED,
    RecommendedAction.OPEN_CONNECTION,
)
BAD_CREDENTIAL_STATE = _connection_state(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.BAD_CREDENTIAL,
    RecommendedAction.QUIT,
)
DEVICE_DISABLED_STATE = _connection_state(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.DEVICE_DISABLED,
    RecommendedAction.QUIT,
)
CLOSED_STATE = _connection_state(
    ConnectionStatus.DISABLED,
    ConnectionStatusChangeReason.CLIENT_CLOSED,
    RecommendedAction.QUIT,
)


class MQTTDeviceTransport(DeviceTransport):
    """
    DeviceTransport connecting a single device identity to IoT Hub over MQTT.

    This transport only supports operations at a QoS (Quality of Service) of 1.
    It must be created within a running event loop.
    """

    def __init__(self, credential: DeviceCredential, config: Optional[TransportConfig] = None):
        """Initializer for MQTTDeviceTransport

        :param credential: The credential to authenticate with
        :type credential: :class:`iot_device_lifecycle.credentials.DeviceCredential`
        :param config: Options for the connection
        :type config: :class:`iot_device_lifecycle.config.TransportConfig`
        """
        super().__init__(credential)
        self._config = config or TransportConfig()
        self._retry_policy = _derive_retry_policy(self._config)

        # Event Loop
        self._event_loop = asyncio.get_running_loop()

        # Client
        self._mqtt_client = self._create_mqtt_client()

        # State
        # NOTE: These values are only modified on the event loop thread
        self._connected = False
        self._desire_connection = False
        self._connection_state = INITIAL_CONNECTION_STATE
        self._subscribed_topics: Set[str] = set()

        # Synchronization
        self._connection_lock = asyncio.Lock()
        self._mid_tracker_lock = asyncio.Lock()

        # Tasks/Futures
        self._network_loop: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._c2d_dispatcher: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Future] = set()
        # NOTE: pending connect is protected by the connection lock
        # Other pending ops are protected by the _mid_tracker_lock
        self._pending_connect: Optional[asyncio.Future] = None
        self._pending_subs: Dict[int, asyncio.Future] = {}
        self._pending_pubs: Dict[int, asyncio.Future] = {}
        self._request_ledger = RequestLedger()

        # Incoming Data
        # C2D messages cross from the Paho network thread into the event loop
        self._incoming_c2d_messages: "janus.Queue[mqtt.MQTTMessage]" = janus.Queue()
        self._message_handler: Optional[FunctionOrCoroutine[[Message], None]] = None
        self._desired_property_handler: Optional[FunctionOrCoroutine[[TwinPatch], None]] = None

    def __repr__(self) -> str:
        return "MQTTDeviceTransport(device_id={}, state={})".format(
            self.credential.client_id, self._connection_state
        )

    def _create_mqtt_client(self) -> mqtt.Client:
        """
        Create the MQTT client object and assign all necessary event handler callbacks.
        """
        logger.debug("Creating Paho client")

        if self._config.websockets:
            transport = "websockets"
        else:
            transport = "tcp"

        mqtt_client = mqtt.Client(
            client_id=self.credential.client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
            transport=transport,
            reconnect_on_failure=False,  # We handle reconnect logic ourselves
        )
        if transport == "websockets":
            logger.debug("Configuring Paho client for connecting using MQTT over websockets")
            mqtt_client.ws_set_options(path=constant.WEBSOCKETS_PATH)
        else:
            logger.debug("Configuring Paho client for connecting using MQTT over TCP")

        proxy_options = self._config.proxy_options
        if proxy_options:
            logger.debug("Configuring custom proxy options on Paho client")
            mqtt_client.proxy_set(
                proxy_type=proxy_options.proxy_type_socks,
                proxy_addr=proxy_options.proxy_address,
                proxy_port=proxy_options.proxy_port,
                proxy_username=proxy_options.proxy_username,
                proxy_password=proxy_options.proxy_password,
            )

        mqtt_client.enable_logger(logging.getLogger("paho"))

        ssl_context = self._config.ssl_context or _default_ssl_context()
        mqtt_client.tls_set_context(context=ssl_context)

        # NOTE: All Paho handlers are invoked on the Paho network thread. The only work done
        # there is to hand the event to the event loop. call_soon_threadsafe preserves the
        # order in which the handlers were invoked.
        def on_connect(client: mqtt.Client, userdata: Any, flags: Dict[str, int], rc: int) -> None:
            logger.debug("Connect Response: rc {} - {}".format(rc, mqtt.connack_string(rc)))
            if rc not in expected_on_connect_rc:
                logger.warning("Connect Response rc {} was unexpected".format(rc))
            self._event_loop.call_soon_threadsafe(self._on_connect_response, rc)

        def on_disconnect(client: mqtt.Client, userdata: Any, rc: int) -> None:
            logger.debug("Disconnect Response: rc {} - {}".format(rc, mqtt.error_string(rc)))
            self._event_loop.call_soon_threadsafe(self._on_disconnect_response, rc)

        def on_subscribe(client: mqtt.Client, userdata: Any, mid: int, granted_qos: Any) -> None:
            logger.debug("SUBACK received for mid {}".format(mid))
            # NOTE: The completion cannot happen until the invocation of .subscribe() that
            # produced this mid releases the mid tracker lock. Do not wait on it here.
            asyncio.run_coroutine_threadsafe(
                self._complete_pending(self._pending_subs, mid, "SUBACK"), self._event_loop
            )

        def on_publish(client: mqtt.Client, userdata: Any, mid: int) -> None:
            logger.debug("PUBACK received for mid {}".format(mid))
            asyncio.run_coroutine_threadsafe(
                self._complete_pending(self._pending_pubs, mid, "PUBACK"), self._event_loop
            )

        def on_message(client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
            logger.debug("Incoming MQTT Message received on {}".format(message.topic))
            if mqtt_topic.is_c2d_topic(message.topic, self.credential.device_id):
                if self._incoming_c2d_messages.closed:
                    logger.debug("Client is closed. Dropping C2D message")
                else:
                    self._incoming_c2d_messages.sync_q.put(message)
            elif mqtt_topic.is_twin_response_topic(message.topic):
                self._event_loop.call_soon_threadsafe(self._on_twin_response, message)
            elif mqtt_topic.is_twin_desired_property_patch_topic(message.topic):
                self._event_loop.call_soon_threadsafe(self._on_desired_property_patch, message)
            else:
                logger.warning("Dropping message on unexpected topic {}".format(message.topic))

        mqtt_client.on_connect = on_connect
        mqtt_client.on_disconnect = on_disconnect
        mqtt_client.on_subscribe = on_subscribe
        mqtt_client.on_publish = on_publish
        mqtt_client.on_message = on_message

        return mqtt_client

    # Connection State #

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    def _set_connection_state(self, state: ConnectionState) -> None:
        """Record the new state and notify the owner. Never raises."""
        logger.debug("Connection state of {}: {}".format(self.credential.client_id, state))
        self._connection_state = state
        callback = self.on_connection_state_change
        if callback:
            try:
                callback(state)
            except Exception as e:
                handle_background_exception(e)

    def _network_loop_running(self) -> bool:
        """Internal helper method to assess network loop"""
        if self._network_loop and not self._network_loop.done():
            return True
        else:
            return False

    # Paho Handlers (Event Loop) #

    def _on_connect_response(self, rc: int) -> None:
        if rc == mqtt.CONNACK_ACCEPTED:
            logger.debug("Client State: CONNECTED")
            self._connected = True
        if self._pending_connect and not self._pending_connect.done():
            self._pending_connect.set_result(rc)
        else:
            logger.warning(
                "Connect response received without outstanding attempt (likely was cancelled)"
            )

    def _on_disconnect_response(self, rc: int) -> None:
        if not self._connected:
            # Either a connect failure, which Paho reports with a disconnect as well, or a
            # double disconnect
            if self._pending_connect and not self._pending_connect.done():
                self._pending_connect.set_exception(
                    ConnectionFailedError(
                        "Connection lost before a connect response: {}".format(
                            mqtt.error_string(rc)
                        )
                    )
                )
            return

        logger.debug("Client State: DISCONNECTED")
        self._connected = False
        self._fail_pending_operations(
            ConnectionDroppedError("Connection dropped: {}".format(mqtt.error_string(rc)))
        )

        if self._desire_connection:
            logger.warning(
                "Unexpected disconnect of {} (rc {}). Reconnecting".format(
                    self.credential.client_id, rc
                )
            )
            self._set_connection_state(RETRYING_STATE)
            self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _complete_pending(self, pending: Dict[int, asyncio.Future], mid: int, ack: str):
        async with self._mid_tracker_lock:
            f = pending.pop(mid, None)
            if f is None:
                logger.warning("Unexpected {} received for mid {}".format(ack, mid))
            elif not f.done():
                f.set_result(True)

    def _fail_pending_operations(self, e: Exception) -> None:
        for pending in (self._pending_subs, self._pending_pubs):
            for f in pending.values():
                if not f.done():
                    f.set_exception(e)
            pending.clear()
        self._request_ledger.cancel_all(e)

    def _on_twin_response(self, message: mqtt.MQTTMessage) -> None:
        try:
            request_id = mqtt_topic.extract_request_id_from_twin_response_topic(message.topic)
            status = mqtt_topic.extract_status_code_from_twin_response_topic(message.topic)
        except ValueError as e:
            logger.warning("Dropping twin response: {}".format(e))
            return
        response = Response(request_id, status, message.payload.decode("utf-8"))
        try:
            self._request_ledger.match_response(response)
        except KeyError:
            logger.warning("Twin response received for unknown request {}".format(request_id))

    def _on_desired_property_patch(self, message: mqtt.MQTTMessage) -> None:
        handler = self._desired_property_handler
        if handler is None:
            logger.debug("No desired property handler set. Dropping patch")
            return
        try:
            patch = json.loads(message.payload.decode("utf-8"))
        except ValueError as e:
            logger.warning("Dropping malformed desired property patch: {}".format(e))
            return
        self._invoke_handler(handler, patch)

    def _invoke_handler(self, handler: FunctionOrCoroutine[[Any], None], arg: Any) -> None:
        if asyncio.iscoroutinefunction(handler):
            task = asyncio.ensure_future(handler(arg))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
            task.add_done_callback(log_task_failure)
        else:
            try:
                handler(arg)
            except Exception as e:
                handle_background_exception(e)

    async def _dispatch_c2d_messages(self) -> None:
        logger.debug("C2D message dispatcher starting")
        try:
            while True:
                mqtt_message = await self._incoming_c2d_messages.async_q.get()
                handler = self._message_handler
                if handler:
                    self._invoke_handler(handler, _decode_c2d_message(mqtt_message))
        except asyncio.CancelledError:
            logger.debug("C2D message dispatcher was cancelled")
            raise

    # Connect / Disconnect #

    async def open(self) -> None:
        """Connect to IoT Hub, retrying failures according to the transport retry policy.
        Has no effect if already connected.

        :raises: ConnectionFailedError if retries were exhausted
        :raises: CredentialError if the credential was rejected
        :raises: DeviceDisabledError if the device identity is disabled or unknown
        """
        async with self._connection_lock:
            if self._connected:
                logger.debug("Already connected!")
                return
            self._desire_connection = True
            await self._connect_with_retries()

    async def _reconnect(self) -> None:
        """Re-establish a connection that was unexpectedly dropped"""
        try:
            if self._network_loop:
                await asyncio.wait([self._network_loop])
            async with self._connection_lock:
                if self._desire_connection and not self._connected:
                    await self._connect_with_retries()
        except asyncio.CancelledError:
            logger.debug("Reconnect was cancelled")
            raise
        except Exception as e:
            # Already reported through the connection state
            logger.info("Reconnect of {} failed: {!r}".format(self.credential.client_id, e))
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _connect_with_retries(self) -> None:
        attempt = 0
        while True:
            try:
                await self._do_connect()
            except CredentialError:
                self._desire_connection = False
                self._set_connection_state(BAD_CREDENTIAL_STATE)
                raise
            except DeviceDisabledError:
                self._desire_connection = False
                self._set_connection_state(DEVICE_DISABLED_STATE)
                raise
            except ConnectionFailedError as e:
                retry, delay = self._retry_policy.should_retry(attempt, e)
                if not retry:
                    self._desire_connection = False
                    self._set_connection_state(RETRY_EXPIRED_STATE)
                    raise
                if self._connection_state != RETRYING_STATE:
                    self._set_connection_state(RETRYING_STATE)
                await asyncio.sleep(delay)
                attempt += 1
            else:
                self._set_connection_state(CONNECTED_STATE)
                return

    async def _do_connect(self) -> None:
        """Connect, start network loop, and wait for response"""

        # NOTE: we know this is safe because of the connection lock in the calling methods
        self._pending_connect = self._event_loop.create_future()
        try:
            # A new password each attempt, so generated tokens are always fresh
            self._mqtt_client.username_pw_set(
                username=self.credential.username,
                password=self.credential.generate_password(self._config.sastoken_ttl),
            )

            port = constant.WEBSOCKETS_PORT if self._config.websockets else constant.MQTT_PORT
            logger.debug("Attempting connect using port {}...".format(port))
            try:
                rc = await self._event_loop.run_in_executor(
                    None,
                    functools.partial(
                        self._mqtt_client.connect,
                        host=self.credential.server_hostname,
                        port=port,
                        keepalive=self._config.keep_alive,
                    ),
                )
            except asyncio.CancelledError:
                logger.warning(
                    "The cancelled connect attempt may still complete as it is in-flight"
                )
                raise
            except Exception as e:
                raise ConnectionFailedError("Failure in Paho .connect()") from e

            if rc != mqtt.MQTT_ERR_SUCCESS:
                # Paho's .connect() is supposed to only return success or raise
                logger.warning("Unexpected rc {} from Paho .connect()".format(rc))
                raise ConnectionFailedError("Unexpected Paho .connect() rc") from MQTTError(rc)

            # NOTE: This MUST be called after connecting - loop_forever requires a socket to have
            # been already established. The loop exits on any disconnect.
            if not self._network_loop_running():
                logger.debug("Starting Paho network loop")
                self._network_loop = self._event_loop.run_in_executor(
                    None, self._mqtt_client.loop_forever
                )
            else:
                logger.debug("Paho network loop was already running")

            logger.debug("Waiting for connect response...")
            rc = await self._pending_connect
        finally:
            self._pending_connect = None

        if rc != mqtt.CONNACK_ACCEPTED:
            # If the connect failed, the network loop will stop
            if self._network_loop is not None:
                logger.debug("Waiting for network loop to exit and clearing task")
                await asyncio.wait([self._network_loop])
                self._network_loop = None
            message = mqtt.connack_string(rc)
            if rc in credential_rejected_rc:
                raise CredentialError(message)
            elif rc == mqtt.CONNACK_REFUSED_IDENTIFIER_REJECTED:
                raise DeviceDisabledError(message)
            else:
                raise ConnectionFailedError(message)

    async def close(self) -> None:
        """Disconnect from IoT Hub and stop reconnecting"""
        # Stop reconnecting first, as a reconnect holds the connection lock between attempts
        self._desire_connection = False
        if self._reconnect_task:
            logger.debug("Cancelling reconnect")
            self._reconnect_task.cancel()
            await asyncio.wait([self._reconnect_task])
            self._reconnect_task = None

        async with self._connection_lock:
            self._desire_connection = False
            if self._network_loop:
                # NOTE: Paho disconnect shouldn't raise any exceptions
                logger.debug("Attempting disconnect")
                rc = await self._event_loop.run_in_executor(None, self._mqtt_client.disconnect)
                logger.debug("Disconnect returned rc {} - {}".format(rc, mqtt.error_string(rc)))
                if rc == mqtt.MQTT_ERR_SUCCESS:
                    logger.debug("Waiting for network loop to exit and clearing task")
                    await asyncio.wait([self._network_loop])
                self._network_loop = None
            else:
                logger.debug("Already disconnected!")

            self._connected = False
            self._subscribed_topics.clear()
            self._fail_pending_operations(ConnectionDroppedError("Client was closed"))
            if self._c2d_dispatcher:
                self._c2d_dispatcher.cancel()
                self._c2d_dispatcher = None
            if not self._incoming_c2d_messages.closed:
                # Undelivered messages are dropped along with the client
                logger.debug("Closing incoming message queue")
                self._incoming_c2d_messages.close()
                await self._incoming_c2d_messages.wait_closed()
            if self._connection_state != CLOSED_STATE:
                self._set_connection_state(CLOSED_STATE)

    # Operations #

    async def _subscribe(self, topic: str) -> None:
        mid = None
        try:
            logger.debug("Attempting subscribe to {}".format(topic))
            # Holding the lock postpones the completion scheduled by the SUBACK handler until
            # there is a Future for it
            async with self._mid_tracker_lock:
                (rc, mid) = await self._event_loop.run_in_executor(
                    None, functools.partial(self._mqtt_client.subscribe, topic=topic, qos=1)
                )
                logger.debug("Subscribe returned rc {} - {}".format(rc, mqtt.error_string(rc)))
                if rc == mqtt.MQTT_ERR_NO_CONN:
                    raise ConnectionDroppedError("Not connected") from MQTTError(rc)
                elif rc != mqtt.MQTT_ERR_SUCCESS:
                    if rc not in expected_subscribe_rc:
                        logger.warning("Unexpected rc {} from Paho .subscribe()".format(rc))
                    raise MQTTError(rc)
                sub_done = self._event_loop.create_future()
                self._pending_subs[mid] = sub_done
                if not self._connected:
                    sub_done.set_exception(ConnectionDroppedError("Connection dropped"))

            logger.debug("Waiting for subscribe response for mid {}".format(mid))
            await sub_done
        finally:
            async with self._mid_tracker_lock:
                if mid is not None:
                    self._pending_subs.pop(mid, None)

    async def _publish(self, topic: str, payload: Union[str, bytes]) -> None:
        mid = None
        try:
            logger.debug("Attempting publish")
            async with self._mid_tracker_lock:
                message_info = await self._event_loop.run_in_executor(
                    None,
                    functools.partial(
                        self._mqtt_client.publish, topic=topic, payload=payload, qos=1
                    ),
                )
                mid = message_info.mid
                rc = message_info.rc
                logger.debug("Publish returned rc {} - {}".format(rc, mqtt.error_string(rc)))
                if rc == mqtt.MQTT_ERR_NO_CONN:
                    raise ConnectionDroppedError("Not connected") from MQTTError(rc)
                elif rc != mqtt.MQTT_ERR_SUCCESS:
                    if rc not in expected_publish_rc:
                        logger.warning("Unexpected rc {} from Paho .publish()".format(rc))
                    raise MQTTError(rc)
                pub_done = self._event_loop.create_future()
                self._pending_pubs[mid] = pub_done
                if not self._connected:
                    pub_done.set_exception(ConnectionDroppedError("Connection dropped"))

            logger.debug("Waiting for publish response for mid {}".format(mid))
            await pub_done
        except asyncio.CancelledError:
            if mid is not None:
                logger.warning("The cancelled publish may still be delivered if it was in-flight")
            raise
        finally:
            async with self._mid_tracker_lock:
                if mid is not None:
                    self._pending_pubs.pop(mid, None)

    def _require_connection(self, operation: str) -> None:
        if not self._connected:
            raise ClientNotReadyError("Cannot {} while not connected".format(operation))

    async def _enable_feature(self, topic: str) -> None:
        if topic in self._subscribed_topics:
            return
        self._require_connection("subscribe")
        await self._subscribe(topic)
        self._subscribed_topics.add(topic)

    async def send_message(self, message: Message) -> None:
        """Send a telemetry message to IoT Hub

        :raises: ValueError if the message is too large
        :raises: ClientNotReadyError if not connected
        :raises: ConnectionDroppedError if the connection drops before the send completes
        """
        self._require_connection("send a message")
        topic = mqtt_topic.get_telemetry_topic_for_publish(
            self.credential.device_id, self.credential.module_id
        )
        topic = mqtt_topic.insert_message_properties_in_topic(
            topic, message.get_system_properties_dict(), message.custom_properties
        )
        payload = message.payload
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        data = payload.encode(message.content_encoding) if isinstance(payload, str) else payload
        size = len(data)
        if size > constant.TELEMETRY_MESSAGE_SIZE_LIMIT:
            raise ValueError("Message size of {} bytes exceeds the limit".format(size))
        await self._publish(topic, data)

    async def receive_message(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Receive a cloud-to-device message

        :raises: RuntimeError if a message handler is set
        """
        if self._message_handler:
            raise RuntimeError("Cannot receive messages while a message handler is set")
        topic = mqtt_topic.get_c2d_topic_for_subscribe(self.credential.device_id)
        await self._enable_feature(topic)
        try:
            mqtt_message = await asyncio.wait_for(
                self._incoming_c2d_messages.async_q.get(), timeout=timeout
            )
        except asyncio.TimeoutError:
            return None
        return _decode_c2d_message(mqtt_message)

    async def _send_twin_request(self, topic_fn, payload: str) -> Response:
        await self._enable_feature(mqtt_topic.get_twin_response_topic_for_subscribe())
        self._require_connection("send a twin request")
        request = self._request_ledger.create_request()
        try:
            await self._publish(topic_fn(request.request_id), payload)
            logger.debug("Waiting for twin response for request {}".format(request.request_id))
            response = await request.get_response()
        finally:
            self._request_ledger.delete_request(request.request_id)
        if response.status >= 300:
            raise IoTHubError(
                "Twin request failed with status {}".format(response.status),
                status=response.status,
            )
        return response

    async def get_twin(self) -> Twin:
        response = await self._send_twin_request(mqtt_topic.get_twin_request_topic_for_publish, " ")
        return cast(Twin, json.loads(response.body))

    async def update_reported_properties(self, patch: TwinPatch) -> None:
        await self._send_twin_request(
            mqtt_topic.get_twin_patch_topic_for_publish, json.dumps(patch)
        )

    async def set_message_received_handler(
        self, handler: Optional[FunctionOrCoroutine[[Message], None]]
    ) -> None:
        if handler:
            await self._enable_feature(
                mqtt_topic.get_c2d_topic_for_subscribe(self.credential.device_id)
            )
            self._message_handler = handler
            if not self._c2d_dispatcher:
                self._c2d_dispatcher = asyncio.ensure_future(self._dispatch_c2d_messages())
                self._c2d_dispatcher.add_done_callback(log_task_failure)
        else:
            self._message_handler = None
            if self._c2d_dispatcher:
                self._c2d_dispatcher.cancel()
                self._c2d_dispatcher = None

    async def set_desired_property_update_handler(
        self, handler: Optional[FunctionOrCoroutine[[TwinPatch], None]]
    ) -> None:
        if handler:
            await self._enable_feature(mqtt_topic.get_twin_patch_topic_for_subscribe())
        self._desired_property_handler = handler


def _decode_c2d_message(mqtt_message: mqtt.MQTTMessage) -> Message:
    properties = mqtt_topic.extract_properties_from_c2d_topic(mqtt_message.topic)
    payload: Union[str, bytes] = mqtt_message.payload
    try:
        payload = mqtt_message.payload.decode(properties.get("$.ce", "utf-8"))
    except (UnicodeDecodeError, LookupError):
        logger.debug("C2D payload could not be decoded. Leaving it as bytes")
    return Message.create_from_properties_dict(payload, properties)


def _derive_retry_policy(config: TransportConfig) -> RetryPolicy:
    if config.retry_policy:
        return config.retry_policy
    elif config.connect_retries > 0:
        # Failures at attempt indices 0 through max_retries are retried, so N - 1 allows N retries
        return ExponentialBackoffRetryPolicy(max_retries=config.connect_retries - 1)
    else:
        return NoRetryPolicy()


def _default_ssl_context() -> ssl.SSLContext:
    """Return a default SSLContext"""
    ssl_context = ssl.SSLContext(protocol=ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    ssl_context.load_default_certs()
    return ssl_context
