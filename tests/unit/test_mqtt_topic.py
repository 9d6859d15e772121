# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import pytest
import logging
from iot_device_lifecycle import mqtt_topic

logging.basicConfig(level=logging.DEBUG)

# NOTE: For URL encoding, always test the ' ' and '/' characters specifically, in addition
# to a generic URL encoding value (e.g. $, #, etc.)
#
# For URL decoding, always test the '+' character specifically, in addition to
# a generic URL encoded value (e.g. %24, %23, etc.)


@pytest.mark.describe(".get_c2d_topic_for_subscribe()")
class TestGetC2DTopicForSubscribe:
    @pytest.mark.it("Returns the topic for subscribing to C2D messages from IoTHub")
    def test_returns_topic(self):
        topic = mqtt_topic.get_c2d_topic_for_subscribe("my_device")
        assert topic == "devices/my_device/messages/devicebound/#"

    @pytest.mark.it("Does NOT URL encode the device_id when generating the topic")
    @pytest.mark.parametrize(
        "device_id, expected_topic",
        [
            pytest.param(
                "my$device", "devices/my$device/messages/devicebound/#", id="id contains '$'"
            ),
            pytest.param(
                "my device", "devices/my device/messages/devicebound/#", id="id contains ' '"
            ),
        ],
    )
    def test_url_encoding(self, device_id, expected_topic):
        assert mqtt_topic.get_c2d_topic_for_subscribe(device_id) == expected_topic

    @pytest.mark.it("Converts the device_id to string when generating the topic")
    def test_str_conversion(self):
        assert mqtt_topic.get_c2d_topic_for_subscribe(2000) == "devices/2000/messages/devicebound/#"


@pytest.mark.describe("get_twin_response_topic_for_subscribe()")
class TestGetTwinResponseTopicForSubscribe:
    @pytest.mark.it("Returns the topic for subscribing to twin responses from IoTHub")
    def test_returns_topic(self):
        assert mqtt_topic.get_twin_response_topic_for_subscribe() == "$iothub/twin/res/#"


@pytest.mark.describe("get_twin_patch_topic_for_subscribe()")
class TestGetTwinPatchTopicForSubscribe:
    @pytest.mark.it("Returns the topic for subscribing to desired property patches from IoTHub")
    def test_returns_topic(self):
        assert (
            mqtt_topic.get_twin_patch_topic_for_subscribe()
            == "$iothub/twin/PATCH/properties/desired/#"
        )


@pytest.mark.describe(".get_telemetry_topic_for_publish()")
class TestGetTelemetryTopicForPublish:
    @pytest.mark.it("Returns the topic for sending telemetry to IoTHub")
    @pytest.mark.parametrize(
        "module_id, expected_topic",
        [
            pytest.param(None, "devices/my_device/messages/events/", id="Device"),
            pytest.param(
                "my_module", "devices/my_device/modules/my_module/messages/events/", id="Module"
            ),
        ],
    )
    def test_returns_topic(self, module_id, expected_topic):
        topic = mqtt_topic.get_telemetry_topic_for_publish("my_device", module_id)
        assert topic == expected_topic


@pytest.mark.describe(".get_twin_request_topic_for_publish()")
class TestGetTwinRequestTopicForPublish:
    @pytest.mark.it("Returns topic for sending a get twin request to IoTHub")
    def test_returns_topic(self):
        topic = mqtt_topic.get_twin_request_topic_for_publish("3226c2f7")
        assert topic == "$iothub/twin/GET/?$rid=3226c2f7"

    @pytest.mark.it("URL encodes 'request_id' parameter when generating the topic")
    @pytest.mark.parametrize(
        "request_id, expected_topic",
        [
            pytest.param("request?id", "$iothub/twin/GET/?$rid=request%3Fid", id="'?'"),
            pytest.param("request id", "$iothub/twin/GET/?$rid=request%20id", id="' '"),
            pytest.param("request/id", "$iothub/twin/GET/?$rid=request%2Fid", id="'/'"),
        ],
    )
    def test_url_encoding(self, request_id, expected_topic):
        assert mqtt_topic.get_twin_request_topic_for_publish(request_id) == expected_topic


@pytest.mark.describe(".get_twin_patch_topic_for_publish()")
class TestGetTwinPatchTopicForPublish:
    @pytest.mark.it("Returns topic for sending a reported properties patch to IoTHub")
    def test_returns_topic(self):
        topic = mqtt_topic.get_twin_patch_topic_for_publish("5002b415")
        assert topic == "$iothub/twin/PATCH/properties/reported/?$rid=5002b415"

    @pytest.mark.it("URL encodes 'request_id' parameter when generating the topic")
    def test_url_encoding(self):
        topic = mqtt_topic.get_twin_patch_topic_for_publish("request id/1")
        assert topic == "$iothub/twin/PATCH/properties/reported/?$rid=request%20id%2F1"


@pytest.mark.describe(".is_c2d_topic() / .is_twin_response_topic() / .is_twin_desired_property_patch_topic()")
class TestTopicClassification:
    @pytest.mark.it("Identifies the kind of an incoming topic")
    @pytest.mark.parametrize(
        "topic, c2d, twin_response, twin_patch",
        [
            pytest.param(
                "devices/my_device/messages/devicebound/%24.mid=1",
                True,
                False,
                False,
                id="C2D",
            ),
            pytest.param("$iothub/twin/res/200/?$rid=1", False, True, False, id="Twin response"),
            pytest.param(
                "$iothub/twin/PATCH/properties/desired/?$version=2",
                False,
                False,
                True,
                id="Twin patch",
            ),
            pytest.param(
                "devices/other_device/messages/devicebound/", False, False, False, id="Other C2D"
            ),
        ],
    )
    def test_classification(self, topic, c2d, twin_response, twin_patch):
        assert mqtt_topic.is_c2d_topic(topic, "my_device") is c2d
        assert mqtt_topic.is_twin_response_topic(topic) is twin_response
        assert mqtt_topic.is_twin_desired_property_patch_topic(topic) is twin_patch


@pytest.mark.describe(".insert_message_properties_in_topic()")
class TestInsertMessagePropertiesInTopic:
    @pytest.mark.it("Appends URL encoded system properties, then custom properties, to the topic")
    def test_insert(self):
        base = "devices/my_device/messages/events/"
        topic = mqtt_topic.insert_message_properties_in_topic(
            base,
            {"$.mid": "1", "$.ct": "application/json"},
            {"temperatureAlert": "true", "key with space": "a/b"},
        )
        assert topic == (
            base
            + "%24.mid=1&%24.ct=application%2Fjson&temperatureAlert=true&key%20with%20space=a%2Fb"
        )

    @pytest.mark.it("Returns the topic unchanged if there are no properties")
    def test_no_properties(self):
        base = "devices/my_device/messages/events/"
        assert mqtt_topic.insert_message_properties_in_topic(base, {}, {}) == base

    @pytest.mark.it("Does not add a separator if there are only custom properties")
    def test_custom_only(self):
        base = "devices/my_device/messages/events/"
        topic = mqtt_topic.insert_message_properties_in_topic(base, {}, {"k": "v"})
        assert topic == base + "k=v"


@pytest.mark.describe(".extract_properties_from_c2d_topic()")
class TestExtractPropertiesFromC2DTopic:
    @pytest.mark.it("Returns a dictionary of the URL decoded key/value pairs in the topic")
    def test_extract(self):
        topic = "devices/my_device/messages/devicebound/%24.mid=1&key%2B1=value%24&plus=a+b"
        assert mqtt_topic.extract_properties_from_c2d_topic(topic) == {
            "$.mid": "1",
            "key+1": "value$",
            "plus": "a+b",
        }

    @pytest.mark.it("Supports keys without values, which map to the empty string")
    def test_key_without_value(self):
        topic = "devices/my_device/messages/devicebound/flag&k=v"
        assert mqtt_topic.extract_properties_from_c2d_topic(topic) == {"flag": "", "k": "v"}

    @pytest.mark.it("Returns an empty dictionary if the topic has no properties")
    def test_no_properties(self):
        topic = "devices/my_device/messages/devicebound/"
        assert mqtt_topic.extract_properties_from_c2d_topic(topic) == {}

    @pytest.mark.it("Raises a ValueError if the provided topic is not a C2D topic")
    def test_bad_topic(self):
        with pytest.raises(ValueError):
            mqtt_topic.extract_properties_from_c2d_topic("devices/my_device/messages/events/")


@pytest.mark.describe(".extract_status_code_from_twin_response_topic()")
class TestExtractStatusCodeFromTwinResponseTopic:
    @pytest.mark.it("Returns the status from a twin response topic")
    def test_returns_status(self):
        topic = "$iothub/twin/res/204/?$rid=1&$version=2"
        assert mqtt_topic.extract_status_code_from_twin_response_topic(topic) == 204

    @pytest.mark.it("Raises a ValueError if the provided topic is not a twin response topic")
    def test_bad_topic(self):
        with pytest.raises(ValueError):
            mqtt_topic.extract_status_code_from_twin_response_topic(
                "$iothub/twin/PATCH/properties/desired/?$version=2"
            )


@pytest.mark.describe(".extract_request_id_from_twin_response_topic()")
class TestExtractRequestIdFromTwinResponseTopic:
    @pytest.mark.it("Returns the URL decoded request id from a twin response topic")
    @pytest.mark.parametrize(
        "topic, expected_rid",
        [
            pytest.param("$iothub/twin/res/200/?$rid=abc&$version=2", "abc", id="Standard"),
            pytest.param("$iothub/twin/res/200/?$rid=request%20id", "request id", id="Encoded"),
        ],
    )
    def test_returns_rid(self, topic, expected_rid):
        assert mqtt_topic.extract_request_id_from_twin_response_topic(topic) == expected_rid

    @pytest.mark.it("Raises a ValueError if the provided topic is not a twin response topic")
    def test_bad_topic(self):
        with pytest.raises(ValueError):
            mqtt_topic.extract_request_id_from_twin_response_topic(
                "devices/my_device/messages/devicebound/?$rid=abc"
            )

    @pytest.mark.it("Raises a ValueError if the provided topic does not contain a request id")
    def test_no_rid(self):
        with pytest.raises(ValueError):
            mqtt_topic.extract_request_id_from_twin_response_topic(
                "$iothub/twin/res/200/?$version=2"
            )
