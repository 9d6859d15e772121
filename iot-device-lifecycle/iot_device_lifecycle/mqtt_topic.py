# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Topic strings used by a device talking to IoT Hub over MQTT"""

import logging
import urllib.parse
from typing import Optional, Dict

logger = logging.getLogger(__name__)

# NOTE: Whenever using standard URL encoding via the urllib.parse.quote() API
# make sure to specify that there are NO safe values (e.g. safe=""). By default
# "/" is skipped in encoding, and that is not desirable.
#
# DO NOT use urllib.parse.quote_plus() or unquote_plus(), as they convert between
# ' ' and '+', which is invalid for MQTT topics.
#
# Device ID and Module ID are never URL encoded in a topic, as IoT Hub does not decode them.

TWIN_RESPONSE_TOPIC_PREFIX = "$iothub/twin/res/"
TWIN_PATCH_TOPIC_PREFIX = "$iothub/twin/PATCH/properties/desired/"


def _get_topic_base(device_id: str, module_id: Optional[str] = None) -> str:
    """
    return the string that is at the beginning of all topics for this
    device/module
    """
    topic = "devices/" + str(device_id)
    if module_id:
        topic = topic + "/modules/" + str(module_id)
    return topic


def get_c2d_topic_for_subscribe(device_id: str) -> str:
    """
    :return: The topic for cloud to device messages. It is of the format
    "devices/<deviceid>/messages/devicebound/#"
    """
    return _get_topic_base(device_id) + "/messages/devicebound/#"


def get_twin_response_topic_for_subscribe() -> str:
    """
    :return: The topic for ALL incoming twin responses. It is of the format
    "$iothub/twin/res/#"
    """
    return TWIN_RESPONSE_TOPIC_PREFIX + "#"


def get_twin_patch_topic_for_subscribe() -> str:
    """
    :return: The topic for ALL incoming twin patches. It is of the format
    "$iothub/twin/PATCH/properties/desired/#
    """
    return TWIN_PATCH_TOPIC_PREFIX + "#"


def get_telemetry_topic_for_publish(device_id: str, module_id: Optional[str] = None) -> str:
    """
    return the topic string used to publish telemetry
    """
    return _get_topic_base(device_id, module_id) + "/messages/events/"


def get_twin_request_topic_for_publish(request_id: str) -> str:
    """
    :return: The topic for publishing a get twin request. It is of the format
    "$iothub/twin/GET/?$rid=<request_id>"
    """
    return "$iothub/twin/GET/?$rid={request_id}".format(
        request_id=urllib.parse.quote(str(request_id), safe="")
    )


def get_twin_patch_topic_for_publish(request_id: str) -> str:
    """
    :return: The topic for publishing a twin patch. It is of the format
    "$iothub/twin/PATCH/properties/reported/?$rid=<request_id>"
    """
    return "$iothub/twin/PATCH/properties/reported/?$rid={request_id}".format(
        request_id=urllib.parse.quote(str(request_id), safe="")
    )


def is_c2d_topic(topic: str, device_id: str) -> bool:
    return topic.startswith(_get_topic_base(device_id) + "/messages/devicebound")


def is_twin_response_topic(topic: str) -> bool:
    return topic.startswith(TWIN_RESPONSE_TOPIC_PREFIX)


def is_twin_desired_property_patch_topic(topic: str) -> bool:
    return topic.startswith(TWIN_PATCH_TOPIC_PREFIX)


def insert_message_properties_in_topic(
    topic: str,
    system_properties: Dict[str, str],
    custom_properties: Dict[str, str],
) -> str:
    """
    URI encode system and custom properties into a message topic.

    :param dict system_properties: A dictionary mapping system properties to their values
    :param dict custom_properties: A dictionary mapping custom properties to their values.
    :return: The modified topic containing the encoded properties
    """
    if system_properties:
        topic += urllib.parse.urlencode(system_properties, quote_via=urllib.parse.quote)
    if system_properties and custom_properties:
        topic += "&"
    if custom_properties:
        topic += urllib.parse.urlencode(custom_properties, quote_via=urllib.parse.quote)
    return topic


def extract_properties_from_c2d_topic(topic: str) -> Dict[str, str]:
    """
    Extract key=value pairs from an incoming C2D message topic, returning them as a dictionary.
    If a key has no matching value, the value will be set to empty string.

    :param str topic: The topic string
    :raises: ValueError if topic has incorrect format
    :returns: dictionary mapping keys to values.
    """
    parts = topic.split("/")
    if len(parts) > 3 and parts[3] == "devicebound":
        properties_string = parts[4] if len(parts) > 4 else ""
    else:
        raise ValueError("topic has incorrect format")
    return _extract_properties(properties_string)


def extract_status_code_from_twin_response_topic(topic: str) -> int:
    """
    Extract the status code from the twin response topic.
    Topics for twin response are in the following format:
    "$iothub/twin/res/{status}/?$rid={rid}"

    :param str topic: The topic string
    :raises: ValueError if the topic has incorrect format
    :returns status code from topic string
    """
    parts = topic.split("/")
    if is_twin_response_topic(topic) and len(parts) >= 4:
        return int(urllib.parse.unquote(parts[3]))
    else:
        raise ValueError("topic has incorrect format")


def extract_request_id_from_twin_response_topic(topic: str) -> str:
    """
    Extract the Request ID (RID) from the twin response topic.
    Topics for twin response are in the following format:
    "$iothub/twin/res/{status}/?$rid={rid}"

    :param str topic: The topic string
    :raises: ValueError if topic has incorrect format
    :returns: request id from topic string
    """
    parts = topic.split("/")
    if is_twin_response_topic(topic) and len(parts) >= 4 and "?" in topic:
        properties = _extract_properties(topic.split("?", 1)[1])
        rid = properties.get("$rid")
        if not rid:
            raise ValueError("No request id in topic")
        return rid
    else:
        raise ValueError("topic has incorrect format")


def _extract_properties(properties_str: str) -> Dict[str, str]:
    """Return a dictionary of properties from a string in the format
    {key1}={value1}&{key2}={value2}...&{keyn}={valuen}

    If there is a just a key with no "=", the value is an empty string
    """
    d: Dict[str, str] = {}
    if len(properties_str) == 0:
        return d

    for entry in properties_str.split("&"):
        pair = entry.split("=")
        key = urllib.parse.unquote(pair[0])
        value = urllib.parse.unquote(pair[1]) if len(pair) > 1 else ""
        d[key] = value

    return d
