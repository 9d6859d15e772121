# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with device credentials: Connection Strings,
Shared Access Signature (SAS) Tokens, and the ordered set of candidate credentials a
device falls back through when one of them is rejected."""

import base64
import binascii
import hashlib
import hmac
import logging
import threading
import time
import urllib.parse
from typing import Dict, List, Iterable, Optional, Union
from . import constant

logger = logging.getLogger(__name__)

CS_DELIMITER = ";"
CS_VAL_SEPARATOR = "="

HOST_NAME = "HostName"
SHARED_ACCESS_KEY_NAME = "SharedAccessKeyName"
SHARED_ACCESS_KEY = "SharedAccessKey"
SHARED_ACCESS_SIGNATURE = "SharedAccessSignature"
DEVICE_ID = "DeviceId"
MODULE_ID = "ModuleId"
GATEWAY_HOST_NAME = "GatewayHostName"
X509 = "x509"

_valid_keys = [
    HOST_NAME,
    SHARED_ACCESS_KEY_NAME,
    SHARED_ACCESS_KEY,
    SHARED_ACCESS_SIGNATURE,
    DEVICE_ID,
    MODULE_ID,
    GATEWAY_HOST_NAME,
    X509,
]
_secret_keys = [SHARED_ACCESS_KEY, SHARED_ACCESS_SIGNATURE]

REQUIRED_SASTOKEN_FIELDS: List[str] = ["sr", "sig", "se"]
TOKEN_FORMAT: str = "SharedAccessSignature sr={resource}&sig={signature}&se={expiry}"


class ConnectionString:
    """Key/value mappings for connection details.
    Uses the same syntax as dictionary
    """

    def __init__(self, connection_string: str) -> None:
        """Initializer for ConnectionString

        :param str connection_string: String with connection details provided by Azure
        :raises: ValueError if provided connection_string is invalid
        """
        self._dict = _parse_connection_string(connection_string)

    def __contains__(self, item: str) -> bool:
        return item in self._dict

    def __getitem__(self, key: str) -> str:
        return self._dict[key]

    def __repr__(self) -> str:
        # Secrets are never displayed
        return CS_DELIMITER.join(
            "{}{}{}".format(k, CS_VAL_SEPARATOR, "***" if k in _secret_keys else v)
            for k, v in self._dict.items()
        )

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the value for key if key is in the dictionary, else default

        :param str key: The key to retrieve a value for
        :param str default: The default value returned if a key is not found
        :returns: The value for the given key
        """
        return self._dict.get(key, default)


def _parse_connection_string(connection_string):
    """Return a dictionary of values contained in a given connection string"""
    try:
        cs_args = connection_string.split(CS_DELIMITER)
    except (AttributeError, TypeError):
        raise TypeError("Connection String must be of type str")
    try:
        d = dict(arg.split(CS_VAL_SEPARATOR, 1) for arg in cs_args)
    except ValueError:
        # A dictionary cannot be formed if a token has no separator
        raise ValueError("Invalid Connection String - Unable to parse")
    if len(cs_args) != len(d):
        # various errors related to incorrect parsing - duplicate args, bad syntax, etc.
        raise ValueError("Invalid Connection String - Unable to parse")
    if not all(key in _valid_keys for key in d.keys()):
        raise ValueError("Invalid Connection String - Invalid Key")
    _validate_keys(d)
    return d


def _validate_keys(d):
    """Raise ValueError if incorrect combination of keys in dict d"""
    host_name = d.get(HOST_NAME)
    shared_access_key = d.get(SHARED_ACCESS_KEY)
    shared_access_signature = d.get(SHARED_ACCESS_SIGNATURE)
    device_id = d.get(DEVICE_ID)
    x509 = d.get(X509)

    # Validate only one type of auth included
    auth_count = 0
    if shared_access_key:
        auth_count += 1
    if x509 and x509.lower() == "true":
        auth_count += 1
    if shared_access_signature:
        auth_count += 1

    if auth_count > 1:
        raise ValueError("Invalid Connection String - Mixed authentication scheme")
    elif auth_count < 1:
        raise ValueError("Invalid Connection String - No authentication scheme")

    # Validate connection details
    if not host_name or not device_id:
        raise ValueError("Invalid Connection String - Missing connection details")


def _get_sastoken_info_from_string(sastoken_string: str) -> Dict[str, str]:
    """Return a dictionary of the values contained in a SAS Token string

    :raises: ValueError if the SAS Token string is invalid
    """
    pieces = sastoken_string.split("SharedAccessSignature ")
    if len(pieces) != 2:
        raise ValueError("Invalid SasToken string: Not a SasToken")

    # Get sastoken info as dictionary
    try:
        sastoken_info = dict(
            map(str.strip, sub.split("=", 1)) for sub in pieces[1].split("&")  # type: ignore
        )
    except Exception as e:
        raise ValueError("Invalid SasToken string: Incorrectly formatted") from e

    # Validate that all required fields are present
    if not all(key in sastoken_info for key in REQUIRED_SASTOKEN_FIELDS):
        raise ValueError("Invalid SasToken string: Not all required fields present")
    return sastoken_info


def sign(key: Union[str, bytes], data_str: Union[str, bytes]) -> str:
    """
    Sign a data string with a symmetric key and the HMAC-SHA256 algorithm.

    :param key: Symmetric Key (base64 encoded)
    :param data_str: Data string to be signed

    :returns: The signed data (base64 encoded)
    :raises: ValueError if the key is invalid
    """
    key_bytes = key.encode("utf-8") if isinstance(key, str) else key
    data_bytes = data_str.encode("utf-8") if isinstance(data_str, str) else data_str
    try:
        signing_key = base64.b64decode(key_bytes, validate=True)
    except binascii.Error:
        raise ValueError("Invalid Symmetric Key")
    hmac_digest = hmac.HMAC(key=signing_key, msg=data_bytes, digestmod=hashlib.sha256).digest()
    return base64.b64encode(hmac_digest).decode("utf-8")


class DeviceCredential:
    """The identity and secret a device uses to authenticate with IoT Hub.

    Either a Shared Access Key, from which SAS Tokens are generated on every connect,
    or a fixed SAS Token provided by the user.
    """

    def __init__(
        self,
        *,
        hostname: str,
        device_id: str,
        module_id: Optional[str] = None,
        gateway_hostname: Optional[str] = None,
        shared_access_key: Optional[str] = None,
        sastoken: Optional[str] = None,
    ) -> None:
        """Initializer for DeviceCredential

        :param str hostname: The hostname of the IoT Hub
        :param str device_id: The device identity
        :param str module_id: The module identity, if authenticating as a module
        :param str gateway_hostname: Hostname of a gateway to connect through instead
        :param str shared_access_key: Symmetric key (base64 encoded) to generate SAS Tokens with
        :param str sastoken: A user-provided SAS Token string

        :raises: ValueError if not exactly one of shared_access_key or sastoken is provided,
            or the key or token is invalid
        """
        if bool(shared_access_key) == bool(sastoken):
            raise ValueError("Exactly one of 'shared_access_key' or 'sastoken' must be provided")
        self.hostname = hostname
        self.device_id = device_id
        self.module_id = module_id
        self.gateway_hostname = gateway_hostname
        self._shared_access_key = shared_access_key
        self._sastoken = sastoken
        if shared_access_key:
            # Fail on an invalid key now rather than on first connect
            sign(shared_access_key, "")
        else:
            expiry = float(_get_sastoken_info_from_string(sastoken)["se"])  # type: ignore
            if expiry < time.time():
                raise ValueError("SAS Token has already expired")

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "DeviceCredential":
        """Create a DeviceCredential from a device (or module) connection string

        :raises: ValueError if the connection string is invalid or uses X509 authentication
        """
        cs = ConnectionString(connection_string)
        if cs.get(X509, "").lower() == "true":
            raise ValueError("X509 authentication is not supported")
        return cls(
            hostname=cs[HOST_NAME],
            device_id=cs[DEVICE_ID],
            module_id=cs.get(MODULE_ID),
            gateway_hostname=cs.get(GATEWAY_HOST_NAME),
            shared_access_key=cs.get(SHARED_ACCESS_KEY),
            sastoken=cs.get(SHARED_ACCESS_SIGNATURE),
        )

    def __repr__(self) -> str:
        return "DeviceCredential(hostname={}, device_id={}, module_id={}, auth={})".format(
            self.hostname,
            self.device_id,
            self.module_id,
            "SharedAccessKey" if self._shared_access_key else "SharedAccessSignature",
        )

    @property
    def server_hostname(self) -> str:
        """The hostname the transport connects to"""
        return self.gateway_hostname or self.hostname

    @property
    def client_id(self) -> str:
        if self.module_id:
            return "{}/{}".format(self.device_id, self.module_id)
        return self.device_id

    @property
    def resource_uri(self) -> str:
        uri = "{}/devices/{}".format(self.hostname, self.device_id)
        if self.module_id:
            uri += "/modules/{}".format(self.module_id)
        return uri

    @property
    def username(self) -> str:
        query_params = {
            "api-version": constant.IOTHUB_API_VERSION,
            "DeviceClientType": constant.USER_AGENT,
        }
        return "{}/{}/?{}".format(
            self.hostname,
            self.client_id,
            urllib.parse.urlencode(query_params, quote_via=urllib.parse.quote),
        )

    def generate_password(self, ttl: int = constant.DEFAULT_SASTOKEN_TTL) -> str:
        """Return a SAS Token string to use as the MQTT password

        :param int ttl: Time to live for a generated token, in seconds.
            Ignored for user-provided tokens.
        """
        if self._sastoken:
            return self._sastoken
        expiry_time = int(time.time()) + ttl
        url_encoded_uri = urllib.parse.quote(self.resource_uri, safe="")
        message = url_encoded_uri + "\n" + str(expiry_time)
        signature = sign(self._shared_access_key, message)  # type: ignore
        return TOKEN_FORMAT.format(
            resource=url_encoded_uri,
            signature=urllib.parse.quote(signature, safe=""),
            expiry=str(expiry_time),
        )


class CredentialSet:
    """Ordered candidate credentials, consumed front to back.

    The credential at the head is the one used to create clients. A credential that is
    discarded is never used again. Safe to use from any thread.
    """

    def __init__(self, credentials: Iterable[DeviceCredential]) -> None:
        """
        :raises: ValueError if no credentials are provided
        """
        self._credentials = list(credentials)
        if not self._credentials:
            raise ValueError("At least one credential is required")
        self._lock = threading.Lock()

    @classmethod
    def from_connection_strings(cls, connection_strings: Iterable[str]) -> "CredentialSet":
        return cls(DeviceCredential.from_connection_string(cs) for cs in connection_strings if cs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    def __bool__(self) -> bool:
        return len(self) > 0

    def current(self) -> Optional[DeviceCredential]:
        """Return the credential at the head, or None if all have been discarded"""
        with self._lock:
            return self._credentials[0] if self._credentials else None

    def discard(self, credential: Optional[DeviceCredential] = None) -> bool:
        """Discard the credential at the head.

        If a credential is given, it is only discarded if it is still the head, so that
        repeated reports about the same rejected credential discard it once.

        :returns: True if any credentials remain
        """
        with self._lock:
            if self._credentials and (credential is None or self._credentials[0] is credential):
                discarded = self._credentials.pop(0)
                logger.warning(
                    "Discarded rejected credential {}. {} credential(s) remaining".format(
                        discarded, len(self._credentials)
                    )
                )
            return len(self._credentials) > 0
