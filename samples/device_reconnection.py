# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This sample sends simulated telemetry for as long as it runs, keeping the device
connected through dropped connections and expired client retries. If the primary
credential is rejected, it falls back to the secondary one, if provided.
"""

import asyncio
import logging
import os
from iot_device_lifecycle import (
    CredentialError,
    CredentialSet,
    DeviceApplication,
    DeviceDisabledError,
    LifecycleConfig,
)

logging.basicConfig(level=logging.INFO)

CONNECTION_STRING = os.getenv("IOTHUB_DEVICE_CONNECTION_STRING")
SECONDARY_CONNECTION_STRING = os.getenv("IOTHUB_DEVICE_CONNECTION_STRING_SECONDARY")
# Run for a limited time if set, otherwise until the user exits
DURATION = os.getenv("SAMPLE_DURATION_SECONDS")


async def main():
    credentials = CredentialSet.from_connection_strings(
        [CONNECTION_STRING, SECONDARY_CONNECTION_STRING]
    )
    app = DeviceApplication(credentials, config=LifecycleConfig(telemetry_interval=10))
    print("Starting telemetry sample")
    print("Press Ctrl-C to exit")
    try:
        await app.run(duration=float(DURATION) if DURATION else None)
    except CredentialError:
        print("Every credential was rejected by IoT Hub. Exiting.")
    except DeviceDisabledError:
        print("The device is disabled. Exiting.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Exit application because user indicated they wish to exit.
        # This will have cancelled `main()` implicitly.
        print("User initiated exit. Exiting.")
