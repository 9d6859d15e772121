# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines constants for use across the iot-device-lifecycle package
"""

VERSION = "1.0.0b1"
USER_AGENT = "iot-device-lifecycle-py/" + VERSION
IOTHUB_API_VERSION = "2021-04-12"

# MQTT
MQTT_PORT = 8883
WEBSOCKETS_PORT = 443
WEBSOCKETS_PATH = "/$iothub/websocket"
DEFAULT_KEEP_ALIVE = 60
MAX_KEEP_ALIVE_SECS = 1740
TELEMETRY_MESSAGE_SIZE_LIMIT = 262144

# Auth
DEFAULT_SASTOKEN_TTL = 3600

# Backoff
# Delays are computed in milliseconds as 2^min(attempt, exponent) plus jitter
DEFAULT_MAX_EXPONENT = 20
# 2^30 ms is roughly 12 days, beyond which a delay is meaningless
MAX_EXPONENT_LIMIT = 30
MAX_JITTER_MS = 1000
DEFAULT_TRANSPORT_CONNECT_RETRIES = 8

# Twin
# A version of 1 means every desired property change made before startup is replayed once
INITIAL_TWIN_VERSION = 1

# Application
DEFAULT_TELEMETRY_INTERVAL = 15
DEFAULT_CLOSE_TIMEOUT = 30
TEMPERATURE_ALERT_THRESHOLD = 30
