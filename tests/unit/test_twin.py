# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import logging
import pytest
import threading
from dev_utils import HangingAsyncMock
from dev_utils.fake_transport import CONNECTED, FakeTransport, make_credential
from iot_device_lifecycle.backoff import ExponentialBackoffRetryPolicy
from iot_device_lifecycle.exceptions import ConnectionDroppedError
from iot_device_lifecycle.retry import RetryExecutor
from iot_device_lifecycle.twin import TwinReconciler, VersionWatermark, get_patch_version

logging.basicConfig(level=logging.DEBUG)


@pytest.fixture
def transport():
    transport = FakeTransport(make_credential())
    transport.emit(CONNECTED)
    return transport


@pytest.fixture
def watermark():
    return VersionWatermark()


@pytest.fixture
def executor(mocker):
    policy = ExponentialBackoffRetryPolicy()
    mocker.patch.object(policy, "compute_delay", return_value=0.001)
    return RetryExecutor(policy)


@pytest.fixture
def reconciler(transport, watermark, executor):
    return TwinReconciler(lambda: transport, watermark, executor, lambda: transport.connected)


@pytest.mark.describe("VersionWatermark")
class TestVersionWatermark:
    @pytest.mark.it("Starts at version 1 by default")
    def test_initial(self):
        assert VersionWatermark().value == 1
        assert VersionWatermark(7).value == 7

    @pytest.mark.it("Advances only to newer versions")
    def test_try_advance(self, watermark):
        assert watermark.try_advance(3) is True
        assert watermark.value == 3
        assert watermark.try_advance(3) is False
        assert watermark.try_advance(2) is False
        assert watermark.value == 3
        assert watermark.try_advance(4) is True
        assert watermark.value == 4

    @pytest.mark.it("Reports whether a version is newer than the watermark")
    def test_is_ahead(self, watermark):
        assert watermark.is_ahead(2)
        assert not watermark.is_ahead(1)
        assert not watermark.is_ahead(0)

    @pytest.mark.it("Never decreases under concurrent advances, ending at the highest version")
    def test_monotonic(self, watermark):
        observations = [[] for _ in range(7)]

        def worker(versions, observed):
            for v in reversed(versions):
                watermark.try_advance(v)
                observed.append(watermark.value)

        threads = [
            threading.Thread(target=worker, args=(list(range(i, 500, 7)), observations[i]))
            for i in range(7)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert watermark.value == 499
        for observed in observations:
            assert observed == sorted(observed)

    @pytest.mark.it("Allows each version to be claimed exactly once across threads")
    def test_claim_once(self, watermark):
        claims = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            if watermark.try_advance(5):
                claims.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(claims) == 1


@pytest.mark.describe("get_patch_version()")
class TestGetPatchVersion:
    @pytest.mark.it("Returns the $version of the patch")
    def test_version(self):
        assert get_patch_version({"$version": 12, "foo": 1}) == 12

    @pytest.mark.it("Raises ValueError if the patch has no valid $version")
    @pytest.mark.parametrize(
        "patch",
        [
            pytest.param({}, id="Missing"),
            pytest.param({"$version": "3"}, id="String"),
            pytest.param({"$version": None}, id="None"),
            pytest.param({"$version": True}, id="Boolean"),
        ],
    )
    def test_invalid(self, patch):
        with pytest.raises(ValueError):
            get_patch_version(patch)


@pytest.mark.describe("TwinReconciler - .on_desired_property_update()")
class TestTwinReconcilerOnDesiredPropertyUpdate:
    @pytest.mark.it("Reports the properties of a newer patch back, without metadata")
    async def test_newer(self, reconciler, transport, watermark, cancellation_source):
        patch = {"$version": 2, "targetTemperature": 21, "fanSpeed": {"value": 3}}
        await reconciler.on_desired_property_update(patch, cancellation_source.token)
        assert transport.reported_patches == [{"targetTemperature": 21, "fanSpeed": {"value": 3}}]
        assert watermark.value == 2

    @pytest.mark.it("Ignores a patch whose version is not newer than the watermark")
    @pytest.mark.parametrize("version", [1, 0])
    async def test_stale(self, reconciler, transport, watermark, cancellation_source, version):
        await reconciler.on_desired_property_update(
            {"$version": version, "foo": "bar"}, cancellation_source.token
        )
        assert transport.reported_patches == []
        assert watermark.value == 1

    @pytest.mark.it("Applies the same version only once, even when delivered repeatedly")
    async def test_duplicate(self, reconciler, transport, cancellation_source):
        patch = {"$version": 3, "foo": "bar"}
        token = cancellation_source.token
        updates = [reconciler.on_desired_property_update(patch, token) for _ in range(4)]
        await asyncio.gather(*updates)
        assert transport.reported_patches == [{"foo": "bar"}]

    @pytest.mark.it("Retries reporting through transient failures")
    async def test_retry(self, reconciler, transport, cancellation_source):
        original = transport.update_reported_properties
        failures = [ConnectionDroppedError()]

        async def update(patch):
            if failures:
                raise failures.pop(0)
            await original(patch)

        transport.update_reported_properties = update
        await reconciler.on_desired_property_update(
            {"$version": 2, "foo": 1}, cancellation_source.token
        )
        assert transport.reported_patches == [{"foo": 1}]

    @pytest.mark.it("Returns without raising if cancellation is requested while reporting")
    async def test_cancelled(self, reconciler, transport, watermark, cancellation_source):
        update_mock = HangingAsyncMock()
        transport.update_reported_properties = update_mock
        task = asyncio.ensure_future(
            reconciler.on_desired_property_update({"$version": 2}, cancellation_source.token)
        )
        await update_mock.wait_for_hang()
        cancellation_source.cancel()
        await asyncio.wait_for(task, 1)
        assert task.exception() is None
        # The version was claimed before reporting began
        assert watermark.value == 2

    @pytest.mark.it("Raises ValueError for a patch without a valid version")
    async def test_invalid(self, reconciler, cancellation_source):
        with pytest.raises(ValueError):
            await reconciler.on_desired_property_update({"foo": 1}, cancellation_source.token)


@pytest.mark.describe("TwinReconciler - .reconcile()")
class TestTwinReconcilerReconcile:
    @pytest.mark.it(
        "Reports the desired properties once when the server version is ahead of the watermark"
    )
    async def test_ahead(self, reconciler, transport, watermark, cancellation_source):
        transport.twin = {"desired": {"$version": 5, "foo": "bar"}, "reported": {}}
        await reconciler.reconcile(cancellation_source.token)
        assert transport.get_twin_count == 1
        assert transport.reported_patches == [{"foo": "bar"}]
        assert watermark.value == 5

    @pytest.mark.it("Does nothing when the server version is not ahead of the watermark")
    @pytest.mark.parametrize("server_version", [1, 4])
    async def test_not_ahead(self, transport, executor, cancellation_source, server_version):
        watermark = VersionWatermark(4)
        reconciler = TwinReconciler(
            lambda: transport, watermark, executor, lambda: transport.connected
        )
        transport.twin = {"desired": {"$version": server_version, "foo": "bar"}, "reported": {}}
        await reconciler.reconcile(cancellation_source.token)
        assert transport.get_twin_count == 1
        assert transport.reported_patches == []
        assert watermark.value == 4

    @pytest.mark.it("Reports at most once when invoked repeatedly or concurrently")
    async def test_idempotent(self, reconciler, transport, cancellation_source):
        transport.twin = {"desired": {"$version": 2, "foo": "bar"}, "reported": {}}
        await asyncio.gather(*[reconciler.reconcile(cancellation_source.token) for _ in range(3)])
        await reconciler.reconcile(cancellation_source.token)
        assert transport.get_twin_count == 4
        assert transport.reported_patches == [{"foo": "bar"}]

    @pytest.mark.it("Does not report a version already applied by a live desired property update")
    async def test_after_live_update(self, reconciler, transport, cancellation_source):
        await reconciler.on_desired_property_update(
            {"$version": 3, "foo": "live"}, cancellation_source.token
        )
        transport.twin = {"desired": {"$version": 3, "foo": "live"}, "reported": {}}
        await reconciler.reconcile(cancellation_source.token)
        assert transport.reported_patches == [{"foo": "live"}]

    @pytest.mark.it("Waits for the transport to be connected before getting the twin")
    async def test_waits_for_connection(self, watermark, executor, cancellation_source):
        transport = FakeTransport(make_credential())
        reconciler = TwinReconciler(
            lambda: transport, watermark, executor, lambda: transport.connected
        )
        task = asyncio.ensure_future(reconciler.reconcile(cancellation_source.token))
        await asyncio.sleep(0.05)
        assert transport.get_twin_count == 0

        transport.emit(CONNECTED)
        await asyncio.wait_for(task, 1)
        assert transport.get_twin_count == 1

    @pytest.mark.it("Uses whichever transport is current at the time of each attempt")
    async def test_current_transport(self, watermark, executor, cancellation_source):
        transports = [FakeTransport(make_credential())]
        transports[0].emit(CONNECTED)
        reconciler = TwinReconciler(
            lambda: transports[-1], watermark, executor, lambda: transports[-1].connected
        )
        await reconciler.reconcile(cancellation_source.token)

        replacement = FakeTransport(make_credential())
        replacement.emit(CONNECTED)
        replacement.twin = {"desired": {"$version": 2, "foo": 1}, "reported": {}}
        transports.append(replacement)
        await reconciler.reconcile(cancellation_source.token)
        assert transports[0].get_twin_count == 1
        assert replacement.get_twin_count == 1
        assert replacement.reported_patches == [{"foo": 1}]
