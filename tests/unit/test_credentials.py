# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import base64
import hashlib
import hmac
import logging
import pytest
import threading
import time
import urllib.parse
from dev_utils.fake_transport import make_credential
from iot_device_lifecycle import constant
from iot_device_lifecycle.credentials import (
    ConnectionString,
    CredentialSet,
    DeviceCredential,
    sign,
)

logging.basicConfig(level=logging.DEBUG)

FAKE_KEY = "Zm9vYmFy"
FUTURE_EXPIRY = int(time.time()) + 3600
FAKE_SASTOKEN = "SharedAccessSignature sr=my.host.name%2Fdevices%2Fmy-device&sig=c2ln&se={}".format(
    FUTURE_EXPIRY
)


@pytest.mark.describe("ConnectionString")
class TestConnectionString(object):
    @pytest.mark.it("Instantiates from a valid connection string")
    @pytest.mark.parametrize(
        "auth_details",
        [
            pytest.param("SharedAccessKey=Zm9vYmFy;", id="Shared Access Key"),
            pytest.param(
                "SharedAccessKey=Zm9vYmFy;SharedAccessKeyName=my-key-name;",
                id="Shared Access Key + Name",
            ),
            pytest.param("SharedAccessSignature=fake-sas-token", id="Shared Access Signature"),
            pytest.param("x509=True;", id="X509"),
        ],
    )
    @pytest.mark.parametrize(
        "iot_details",
        [
            pytest.param("HostName=my.host.name;DeviceId=my-device;", id="Standard Device"),
            pytest.param(
                "HostName=my.host.name;GatewayHostName=mygateway;DeviceId=my-device;",
                id="Edge Leaf Device",
            ),
            pytest.param(
                "HostName=my.host.name;DeviceId=my-device;ModuleId=my-module;", id="Standard Module"
            ),
        ],
    )
    def test_instantiates_correctly_from_string(self, auth_details, iot_details):
        input_str = (iot_details + auth_details).strip(";")
        cs = ConnectionString(input_str)
        assert isinstance(cs, ConnectionString)

    @pytest.mark.it("Raises ValueError on invalid string input during instantiation")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param("", id="Empty string"),
            pytest.param("garbage", id="Not a connection string"),
            pytest.param(
                "HostName=my.host.name;SharedAccessKey=Zm9vYmFy",
                id="Incomplete connection string (missing device identity)",
            ),
            pytest.param(
                "DeviceId=my-device;SharedAccessKey=Zm9vYmFy",
                id="Incomplete connection string (missing endpoint)",
            ),
            pytest.param(
                "HostName=my.host.name;DeviceId=my-device;",
                id="Incomplete connection string (missing auth)",
            ),
            pytest.param(
                "InvalidKey=my.host.name;SharedAccessKeyName=mykeyname;SharedAccessKey=Zm9vYmFy",
                id="Invalid key",
            ),
            pytest.param(
                "HostName=my.host.name;HostName=my.host.name;SharedAccessKey=Zm9vYmFy",
                id="Duplicate key",
            ),
            pytest.param(
                "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=Zm9vYmFy;x509=true",
                id="Mixed authentication scheme",
            ),
        ],
    )
    def test_raises_value_error_on_invalid_input(self, input_string):
        with pytest.raises(ValueError):
            ConnectionString(input_string)

    @pytest.mark.it("Raises TypeError on non-string input during instantiation")
    @pytest.mark.parametrize(
        "input_val",
        [
            pytest.param(2123, id="Integer"),
            pytest.param(b"bytes", id="Bytes"),
            pytest.param(object(), id="Complex object"),
        ],
    )
    def test_raises_type_error_on_non_string_input(self, input_val):
        with pytest.raises(TypeError):
            ConnectionString(input_val)

    @pytest.mark.it("Masks secrets in its string representation")
    def test_string_representation_masks_secrets(self):
        cs = ConnectionString("HostName=my.host.name;DeviceId=my-device;SharedAccessKey=Zm9vYmFy")
        assert repr(cs) == "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=***"
        assert FAKE_KEY not in str(cs)

    @pytest.mark.it("Supports indexing syntax, .get() and the 'in' operator")
    def test_mapping(self):
        cs = ConnectionString(
            "HostName=my.host.name;DeviceId=my-device;SharedAccessKeyName=mykey;SharedAccessKey=Zm9vYmFy"
        )
        assert cs["HostName"] == "my.host.name"
        assert cs["SharedAccessKey"] == FAKE_KEY
        assert "SharedAccessKeyName" in cs
        assert "ModuleId" not in cs
        assert cs.get("ModuleId") is None
        assert cs.get("ModuleId", "default") == "default"
        with pytest.raises(KeyError):
            cs["SharedAccessSignature"]


@pytest.mark.describe("sign()")
class TestSign:
    @pytest.mark.it("Returns the base64 encoded HMAC-SHA256 of the data, using the decoded key")
    def test_sign(self):
        expected = base64.b64encode(
            hmac.HMAC(base64.b64decode(FAKE_KEY), b"some data", hashlib.sha256).digest()
        ).decode("utf-8")
        assert sign(FAKE_KEY, "some data") == expected
        assert sign(FAKE_KEY.encode("utf-8"), b"some data") == expected

    @pytest.mark.it("Raises ValueError if the key is not valid base64")
    def test_invalid_key(self):
        with pytest.raises(ValueError):
            sign("not base64!", "some data")


@pytest.mark.describe("DeviceCredential")
class TestDeviceCredential:
    @pytest.mark.it("Instantiates from a device connection string")
    def test_from_connection_string(self):
        credential = DeviceCredential.from_connection_string(
            "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=Zm9vYmFy"
        )
        assert credential.hostname == "my.host.name"
        assert credential.device_id == "my-device"
        assert credential.module_id is None
        assert credential.client_id == "my-device"

    @pytest.mark.it("Instantiates from a module connection string routed through a gateway")
    def test_from_module_connection_string(self):
        credential = DeviceCredential.from_connection_string(
            "HostName=my.host.name;DeviceId=my-device;ModuleId=my-module;GatewayHostName=gw;SharedAccessKey=Zm9vYmFy"
        )
        assert credential.client_id == "my-device/my-module"
        assert credential.server_hostname == "gw"
        assert credential.resource_uri == "my.host.name/devices/my-device/modules/my-module"

    @pytest.mark.it("Raises ValueError for a connection string using X509 authentication")
    def test_x509(self):
        with pytest.raises(ValueError):
            DeviceCredential.from_connection_string(
                "HostName=my.host.name;DeviceId=my-device;x509=true"
            )

    @pytest.mark.it("Raises ValueError unless exactly one of a key or a SAS token is provided")
    @pytest.mark.parametrize(
        "kwargs",
        [
            pytest.param({}, id="Neither"),
            pytest.param({"shared_access_key": FAKE_KEY, "sastoken": FAKE_SASTOKEN}, id="Both"),
        ],
    )
    def test_auth_required(self, kwargs):
        with pytest.raises(ValueError):
            DeviceCredential(hostname="my.host.name", device_id="my-device", **kwargs)

    @pytest.mark.it("Raises ValueError for an invalid key, or an invalid or expired SAS token")
    @pytest.mark.parametrize(
        "kwargs",
        [
            pytest.param({"shared_access_key": "not base64!"}, id="Invalid key"),
            pytest.param({"sastoken": "garbage"}, id="Invalid SAS token"),
            pytest.param(
                {"sastoken": "SharedAccessSignature sr=a&sig=b&se=1000"}, id="Expired SAS token"
            ),
        ],
    )
    def test_invalid_secret(self, kwargs):
        with pytest.raises(ValueError):
            DeviceCredential(hostname="my.host.name", device_id="my-device", **kwargs)

    @pytest.mark.it("Derives the MQTT username from the hostname and client identity")
    def test_username(self):
        credential = make_credential(device_id="my-device")
        username = credential.username
        assert username.startswith("{}/my-device/?".format(credential.hostname))
        assert "api-version={}".format(constant.IOTHUB_API_VERSION) in username
        assert "DeviceClientType=" + urllib.parse.quote(constant.USER_AGENT, safe="") in username

    @pytest.mark.it("Generates a SAS token signing the resource URI and expiry with the key")
    def test_generate_password(self, mocker):
        mocker.patch.object(time, "time", return_value=1000)
        credential = DeviceCredential(
            hostname="my.host.name", device_id="my-device", shared_access_key=FAKE_KEY
        )
        password = credential.generate_password(ttl=60)

        resource = urllib.parse.quote("my.host.name/devices/my-device", safe="")
        signature = sign(FAKE_KEY, resource + "\n1060")
        assert password == "SharedAccessSignature sr={}&sig={}&se=1060".format(
            resource, urllib.parse.quote(signature, safe="")
        )

    @pytest.mark.it("Uses a user-provided SAS token as the password as it is")
    def test_user_sastoken(self):
        credential = DeviceCredential(
            hostname="my.host.name", device_id="my-device", sastoken=FAKE_SASTOKEN
        )
        assert credential.generate_password() == FAKE_SASTOKEN

    @pytest.mark.it("Does not include secrets in its string representation")
    def test_repr(self):
        credential = make_credential()
        assert credential._shared_access_key not in repr(credential)


@pytest.mark.describe("CredentialSet")
class TestCredentialSet:
    @pytest.fixture
    def primary(self):
        return make_credential()

    @pytest.fixture
    def secondary(self):
        return make_credential(key="c2Vjb25kYXJ5X2tleQ==")

    @pytest.mark.it("Raises ValueError if no credentials are provided")
    def test_empty(self):
        with pytest.raises(ValueError):
            CredentialSet([])

    @pytest.mark.it("Provides credentials in the order given")
    def test_current(self, primary, secondary):
        credentials = CredentialSet([primary, secondary])
        assert credentials.current() is primary
        assert len(credentials) == 2
        assert credentials

    @pytest.mark.it("Moves on to the next credential when the current one is discarded")
    def test_discard(self, primary, secondary):
        credentials = CredentialSet([primary, secondary])
        assert credentials.discard(primary) is True
        assert credentials.current() is secondary
        assert credentials.discard(secondary) is False
        assert credentials.current() is None
        assert len(credentials) == 0
        assert not credentials

    @pytest.mark.it("Discards a credential only if it is still the current one")
    def test_discard_stale(self, primary, secondary):
        credentials = CredentialSet([primary, secondary])
        credentials.discard(primary)
        assert credentials.discard(primary) is True
        assert credentials.current() is secondary

    @pytest.mark.it("Discards the current credential if none is specified")
    def test_discard_current(self, primary, secondary):
        credentials = CredentialSet([primary, secondary])
        credentials.discard()
        assert credentials.current() is secondary

    @pytest.mark.it("Discards each credential once under concurrent discards")
    def test_discard_concurrent(self, primary, secondary):
        credentials = CredentialSet([primary, secondary])
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            credentials.discard(primary)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert credentials.current() is secondary

    @pytest.mark.it("Instantiates from connection strings, skipping empty ones")
    def test_from_connection_strings(self):
        credentials = CredentialSet.from_connection_strings(
            [
                "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=Zm9vYmFy",
                "",
                "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=c2Vjb25k",
            ]
        )
        assert len(credentials) == 2
