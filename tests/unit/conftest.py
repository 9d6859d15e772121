# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import pytest
from dev_utils.fake_transport import FakeTransportFactory, make_credential
from iot_device_lifecycle.cancellation import CancellationTokenSource
from iot_device_lifecycle.credentials import CredentialSet


@pytest.fixture
def credential():
    return make_credential()


@pytest.fixture
def credentials():
    """Primary and secondary credentials for the same device"""
    return CredentialSet([make_credential(), make_credential(key="c2Vjb25kYXJ5X2tleQ==")])


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
async def cancellation_source():
    source = CancellationTokenSource()
    yield source
    source.dispose()


@pytest.fixture
def settle():
    """Returns a coroutine function that runs the event loop until the background tasks of
    the given manager (and everything they spawn) have finished"""

    async def settle_fn(manager):
        for _ in range(100):
            # Notifications are scheduled with call_soon_threadsafe, so yield first
            for _ in range(5):
                await asyncio.sleep(0)
            tasks = list(manager._background_tasks)
            if not tasks:
                return
            await asyncio.wait(tasks)
        raise AssertionError("Background tasks did not settle")

    return settle_fn
