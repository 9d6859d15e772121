# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import enum
from typing import Optional, Dict, Union
from .custom_typing import JSONSerializable


class ConnectionStatus(enum.Enum):
    """Connectivity status of a transport client"""

    CONNECTED = "connected"
    # The transport lost its connection and is retrying on its own
    DISCONNECTED_RETRYING = "disconnected_retrying"
    # The transport is disconnected and will not recover without being re-initialized
    DISCONNECTED = "disconnected"
    # The transport was closed by explicit request
    DISABLED = "disabled"


class ConnectionStatusChangeReason(enum.Enum):
    """Reason given by a transport client for a change in connectivity status"""

    OK = "ok"
    BAD_CREDENTIAL = "bad_credential"
    DEVICE_DISABLED = "device_disabled"
    RETRY_EXPIRED = "retry_expired"
    COMMUNICATION_ERROR = "communication_error"
    CLIENT_CLOSED = "client_closed"
    UNKNOWN = "unknown"


class RecommendedAction(enum.Enum):
    """Action a transport client recommends to its owner after a status change"""

    PERFORM_NORMALLY = "perform_normally"
    OPEN_CONNECTION = "open_connection"
    WAIT_FOR_RETRY_POLICY = "wait_for_retry_policy"
    QUIT = "quit"


class ConnectionState:
    """Snapshot of a transport client's connectivity, produced on every connectivity change

    :ivar status: The connectivity status
    :type status: :class:`ConnectionStatus`
    :ivar reason: The reason for the most recent status change
    :type reason: :class:`ConnectionStatusChangeReason`
    :ivar recommended_action: What the owner of the client should do next
    :type recommended_action: :class:`RecommendedAction`
    """

    __slots__ = ("status", "reason", "recommended_action")

    def __init__(
        self,
        status: ConnectionStatus,
        reason: ConnectionStatusChangeReason = ConnectionStatusChangeReason.OK,
        recommended_action: RecommendedAction = RecommendedAction.PERFORM_NORMALLY,
    ) -> None:
        self.status = status
        self.reason = reason
        self.recommended_action = recommended_action

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConnectionState):
            return NotImplemented
        return (
            self.status == other.status
            and self.reason == other.reason
            and self.recommended_action == other.recommended_action
        )

    def __hash__(self) -> int:
        return hash((self.status, self.reason, self.recommended_action))

    def __repr__(self) -> str:
        return "ConnectionState(status={}, reason={}, recommended_action={})".format(
            self.status.name, self.reason.name, self.recommended_action.name
        )


# The state of a transport client that has never been opened, or was closed by its owner
INITIAL_CONNECTION_STATE = ConnectionState(
    ConnectionStatus.DISCONNECTED,
    ConnectionStatusChangeReason.CLIENT_CLOSED,
    RecommendedAction.OPEN_CONNECTION,
)


class Message:
    """Represents a message to or from IoTHub

    :ivar payload: The data that constitutes the payload
    :ivar content_encoding: Content encoding of the message data. Can be 'utf-8', 'utf-16' or 'utf-32'
    :ivar content_type: Content type property used to route messages with the message-body. Can be 'text/plain' or 'application/json'
    :ivar message_id: A user-settable identifier for the message used for request-reply patterns
    :ivar custom_properties: Dictionary of custom message properties. The keys and values of these properties will always be string.
    :ivar expiry_time_utc: Date and time of message expiration in UTC format
    :ivar user_id: An ID to specify the origin of messages
    :ivar correlation_id: A property in a response message that typically contains the message_id of the request, in request-reply patterns
    """

    def __init__(
        self,
        payload: Union[str, bytes, JSONSerializable],
        content_encoding: str = "utf-8",
        content_type: str = "text/plain",
        message_id: Optional[str] = None,
    ) -> None:
        """
        Initializer for Message

        :param payload: The data that constitutes the payload.
        :param str content_encoding: Content encoding of the message payload.
            Acceptable values are 'utf-8', 'utf-16' and 'utf-32'
        :param str content_type: Content type of the message payload.
            Acceptable values are 'text/plain' and 'application/json'
        :param str message_id: Identifier for the message

        :raises: ValueError if an unsupported encoding or content type is provided
        """
        if content_encoding not in ["utf-8", "utf-16", "utf-32"]:
            raise ValueError(
                "Invalid content encoding. Supported codecs are 'utf-8', 'utf-16' and 'utf-32'"
            )
        if content_type not in ["text/plain", "application/json"]:
            raise ValueError(
                "Invalid content type. Supported types are 'text/plain' and 'application/json'"
            )

        self.payload = payload
        self.content_encoding = content_encoding
        self.content_type = content_type
        self.message_id = message_id
        self.custom_properties: Dict[str, str] = {}

        # Incoming Messages (C2D) only
        self.expiry_time_utc: Optional[str] = None
        self.user_id: Optional[str] = None
        self.correlation_id: Optional[str] = None

    def __str__(self) -> str:
        return str(self.payload)

    def get_system_properties_dict(self) -> Dict[str, str]:
        """Return a dictionary of system properties"""
        d = {}
        if self.message_id:
            d["$.mid"] = self.message_id
        if self.content_encoding:
            d["$.ce"] = self.content_encoding
        if self.content_type:
            d["$.ct"] = self.content_type
        if self.expiry_time_utc:
            d["$.exp"] = self.expiry_time_utc
        if self.user_id:
            d["$.uid"] = self.user_id
        if self.correlation_id:
            d["$.cid"] = self.correlation_id
        return d

    @classmethod
    def create_from_properties_dict(
        cls, payload: Union[str, bytes], properties: Dict[str, str]
    ) -> "Message":
        """Create a Message from an incoming payload and the properties decoded from its topic.
        Unrecognized properties become custom properties.
        """
        system = {
            "$.ce": "content_encoding",
            "$.ct": "content_type",
            "$.mid": "message_id",
            "$.exp": "expiry_time_utc",
            "$.uid": "user_id",
            "$.cid": "correlation_id",
        }
        message = cls(payload)
        for key, value in properties.items():
            if key in system:
                setattr(message, system[key], value)
            elif key.startswith("$.") or key == "iothub-ack":
                # Remaining system properties are not surfaced
                continue
            else:
                message.custom_properties[key] = value
        return message
