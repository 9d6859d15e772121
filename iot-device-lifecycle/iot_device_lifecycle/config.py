# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import logging
import socks
import ssl
import sys
from typing import Optional, Iterable, Type, FrozenSet, Tuple
from . import constant
from .backoff import RetryPolicy
from .models import ConnectionStatusChangeReason


logger = logging.getLogger(__name__)


string_to_socks_constant_map = {"HTTP": socks.HTTP, "SOCKS4": socks.SOCKS4, "SOCKS5": socks.SOCKS5}
socks_constant_to_string_map = {socks.HTTP: "HTTP", socks.SOCKS4: "SOCKS4", socks.SOCKS5: "SOCKS5"}

# Reasons for a DISCONNECTED status that result in the client being re-initialized by default
DEFAULT_REINITIALIZE_ON = frozenset(
    [ConnectionStatusChangeReason.RETRY_EXPIRED, ConnectionStatusChangeReason.COMMUNICATION_ERROR]
)


class ProxyOptions:
    """
    A class containing various options to send traffic through proxy servers by enabling
    proxying of MQTT connection.
    """

    def __init__(
        self,
        proxy_type: str,
        proxy_address: str,
        proxy_port: Optional[int] = None,
        proxy_username: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        """
        Initializer for proxy options.
        :param str proxy_type: The type of the proxy server. One of "HTTP", "SOCKS4" or "SOCKS5"
        :param str proxy_address: IP address or DNS name of proxy server
        :param int proxy_port: The port of the proxy server. Defaults to 1080 for socks and 8080 for http.
        :param str proxy_username: (optional) username for SOCKS5 proxy, or userid for SOCKS4 proxy.
        :param str proxy_password: (optional) password for the SOCKS5 username provided.
        """
        (self.proxy_type, self.proxy_type_socks) = _format_proxy_type(proxy_type)
        self.proxy_address = proxy_address
        if proxy_port is None:
            self.proxy_port = _derive_default_proxy_port(self.proxy_type)
        else:
            self.proxy_port = int(proxy_port)
        self.proxy_username = proxy_username
        self.proxy_password = proxy_password

    def __repr__(self) -> str:
        return "ProxyOptions(proxy_type={}, proxy_address={}, proxy_port={})".format(
            self.proxy_type, self.proxy_address, self.proxy_port
        )


class TransportConfig:
    """
    Class for storing the options of a transport client connecting to IoT Hub.
    """

    def __init__(
        self,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        proxy_options: Optional[ProxyOptions] = None,
        keep_alive: int = constant.DEFAULT_KEEP_ALIVE,
        websockets: bool = False,
        sastoken_ttl: int = constant.DEFAULT_SASTOKEN_TTL,
        connect_retries: int = constant.DEFAULT_TRANSPORT_CONNECT_RETRIES,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """Initializer for TransportConfig

        :param ssl_context: SSLContext to use with the client. A default context verifying
            the server against the system certificate store is created if not provided.
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Details of proxy configuration
        :type proxy_options: :class:`ProxyOptions`
        :param int keep_alive: Maximum period in seconds between communications with the
            broker.
        :param bool websockets: Enabling/disabling websockets in MQTT. This feature is relevant
            if a firewall blocks port 8883 from use.
        :param int sastoken_ttl: Lifetime in seconds of generated SAS tokens
        :param int connect_retries: Number of additional connection attempts a transport
            makes on its own before reporting that its retries have expired.
        :param retry_policy: Policy used by the transport between its own connection
            attempts. Overrides connect_retries if provided.
        :type retry_policy: :class:`iot_device_lifecycle.backoff.RetryPolicy`
        """
        # Network
        self.ssl_context = ssl_context
        self.proxy_options = proxy_options
        self.websockets = websockets

        # Auth
        self.sastoken_ttl = _sanitize_positive_int(sastoken_ttl, "sastoken_ttl")

        # MQTT
        self.keep_alive = _sanitize_keep_alive(keep_alive)

        # Reconnect
        self.connect_retries = _sanitize_non_negative_int(connect_retries, "connect_retries")
        self.retry_policy = retry_policy


class LifecycleConfig:
    """
    Class for storing the options that govern connection lifecycle orchestration.
    """

    def __init__(
        self,
        *,
        max_retries: int = sys.maxsize,
        max_exponent: int = constant.DEFAULT_MAX_EXPONENT,
        always_retry: Iterable[Type[BaseException]] = (),
        reinitialize_on: Iterable[ConnectionStatusChangeReason] = DEFAULT_REINITIALIZE_ON,
        telemetry_interval: float = constant.DEFAULT_TELEMETRY_INTERVAL,
        close_timeout: float = constant.DEFAULT_CLOSE_TIMEOUT,
    ) -> None:
        """Initializer for LifecycleConfig

        :param int max_retries: Highest attempt index at which an operation is still retried.
        :param int max_exponent: Cap on the exponent of the backoff delay.
        :param always_retry: Exception types that are retried regardless of their nature.
        :param reinitialize_on: Reasons accompanying a DISCONNECTED status that cause the
            client to be replaced. Only RETRY_EXPIRED and COMMUNICATION_ERROR are accepted.
        :param float telemetry_interval: Seconds between telemetry messages
        :param float close_timeout: Seconds allowed for closing the client at shutdown
        """
        self.max_retries = _sanitize_non_negative_int(max_retries, "max_retries")
        self.max_exponent = _sanitize_max_exponent(max_exponent)
        self.always_retry = _sanitize_exception_types(always_retry)
        self.reinitialize_on = _sanitize_reinitialize_on(reinitialize_on)
        self.telemetry_interval = _sanitize_positive_number(
            telemetry_interval, "telemetry_interval"
        )
        self.close_timeout = _sanitize_positive_number(close_timeout, "close_timeout")


# Sanitization #


def _format_proxy_type(proxy_type):
    """Returns a tuple of formats for proxy type (string, socks library constant)"""
    try:
        return (proxy_type, string_to_socks_constant_map[proxy_type])
    except KeyError:
        # The socks library constants are accepted as well
        try:
            return (socks_constant_to_string_map[proxy_type], proxy_type)
        except KeyError:
            raise ValueError("Invalid Proxy Type")


def _derive_default_proxy_port(proxy_type):
    if proxy_type == "HTTP":
        return 8080
    else:
        return 1080


def _sanitize_keep_alive(keep_alive):
    try:
        keep_alive = int(keep_alive)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for 'keep alive'. Must be a numeric value.")

    if keep_alive <= 0:
        # Not allowing a keep alive of 0 as this would mean frequent ping exchanges.
        raise ValueError("'keep alive' must be greater than 0")

    if keep_alive > constant.MAX_KEEP_ALIVE_SECS:
        raise ValueError("'keep_alive' cannot exceed 1740 seconds (29 minutes)")

    return keep_alive


def _sanitize_max_exponent(max_exponent):
    max_exponent = _sanitize_non_negative_int(max_exponent, "max_exponent")
    if max_exponent > constant.MAX_EXPONENT_LIMIT:
        logger.warning(
            "'max_exponent' of {} exceeds the limit. Using {} instead".format(
                max_exponent, constant.MAX_EXPONENT_LIMIT
            )
        )
        max_exponent = constant.MAX_EXPONENT_LIMIT
    return max_exponent


def _sanitize_exception_types(types) -> Tuple[Type[BaseException], ...]:
    types = tuple(types)
    for t in types:
        if not (isinstance(t, type) and issubclass(t, BaseException)):
            raise TypeError(
                "Invalid 'always_retry' entry {!r}. Must be an exception type".format(t)
            )
    return types


def _sanitize_reinitialize_on(reasons) -> FrozenSet[ConnectionStatusChangeReason]:
    reasons = frozenset(reasons)
    invalid = reasons - DEFAULT_REINITIALIZE_ON
    if invalid:
        raise ValueError(
            "Invalid 'reinitialize_on' reasons: {}".format(
                ", ".join(sorted(r.name for r in invalid))
            )
        )
    return reasons


def _sanitize_non_negative_int(value, name):
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("Invalid type for '{}'. Must be an integer.".format(name))
    if value < 0:
        raise ValueError("'{}' cannot be negative".format(name))
    return value


def _sanitize_positive_int(value, name):
    value = _sanitize_non_negative_int(value, name)
    if value == 0:
        raise ValueError("'{}' must be greater than 0".format(name))
    return value


def _sanitize_positive_number(value, name):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("Invalid type for '{}'. Must be a numeric value.".format(name))
    if value <= 0:
        raise ValueError("'{}' must be greater than 0".format(name))
    return value
