import json

import pytest

from ctcrouter.config_codec import (
    ConfigFormatError,
    SessionConfig,
    decode,
    deserialize,
    encode,
    serialize,
)
from ctcrouter.presets import default_form


def test_encode_empty_form_yields_defaults():
    config = encode({})

    assert config.input_id == ""
    assert config.output_id == ""
    assert config.latency == 100
    assert config.left_speaker == (0.6, 0.6)
    assert config.right_speaker == (0.6, 0.6)
    assert config.left_ear == pytest.approx((-0.08, 0.0))
    assert config.right_ear == pytest.approx((0.08, 0.0))
    assert config.master_gain == 0.75
    assert config.attenuation == 0.7
    assert config.lowpass_cutoff_min == 800
    assert config.highpass_cutoff == 50
    assert config.lowshelf_cutoff == 200
    assert config.lowshelf_gain == 3
    assert config.wet_dry == 1.0
    assert config.temperature == 20


def test_encode_none_form():
    assert encode(None) == encode({})


def test_encode_uses_catalog_defaults_for_devices():
    config = encode({}, default_input="usb-in", default_output="spk0")
    assert (config.input_id, config.output_id) == ("usb-in", "spk0")

    config = encode({"input_device": "mic0"}, default_input="usb-in", default_output="spk0")
    assert config.input_id == "mic0"


def test_encode_reference_scenario():
    config = encode({
        "listener_coord_x": 0, "listener_coord_y": 0,
        "interaural_distance": 16,
        "speaker_coord_lx": 60, "speaker_coord_ly": 60,
        "speaker_coord_rx": 60, "speaker_coord_ry": 60,
    })
    assert config.left_ear == (-0.08, 0.0)
    assert config.right_ear == (0.08, 0.0)
    assert config.left_speaker == (0.6, 0.6)


def test_encode_scales_and_clamps_ratios():
    config = encode({"master_gain": "150", "canceling_attenuation": "-20", "wet_dry": "35"})
    assert config.master_gain == 1.0
    assert config.attenuation == 0.0
    assert config.wet_dry == pytest.approx(0.35)


def test_encode_never_fails_on_garbage():
    garbage = {name: value for name, value in zip(
        default_form().keys(),
        ["x", None, [], {}, "inf", "nan", object(), True, "", " ", "1e999"] * 3,
    )}
    config = encode(garbage)
    assert isinstance(config, SessionConfig)
    assert isinstance(config.latency, int)


def test_encode_rounds_latency():
    assert encode({"master_latency": "42.6"}).latency == 43


def test_engine_payload_layout(form):
    payload = encode(form).to_engine_payload()
    assert payload["inputId"] == "usb-in"
    assert payload["outputId"] == "spk0"
    assert payload["latency"] == 80
    assert payload["position"]["leftSpeaker"] == [-0.6, 0.6]
    assert set(payload["position"]) == {"leftSpeaker", "rightSpeaker", "leftEar", "rightEar"}
    assert payload["wetDry"] == 1.0


def test_serialize_round_trip(form):
    config = encode(form)
    assert deserialize(serialize(config)) == config

    other = encode({"listener_coord_x": "13.7", "listener_coord_y": "-4.2",
                    "interaural_distance": "17.3", "lowshelf_gain": "-2.5"})
    assert deserialize(serialize(other)) == other


def test_serialize_is_json(form):
    data = json.loads(serialize(encode(form)))
    assert data["position"]["leftEar"] == [-0.08, 0.0]


@pytest.mark.parametrize("text", [
    "",
    "not json",
    "[]",
    json.dumps({"inputId": "a"}),
    json.dumps({"inputId": "a", "outputId": "b", "latency": "100", "position": {}}),
])
def test_deserialize_rejects_malformed_text(text):
    with pytest.raises(ConfigFormatError):
        deserialize(text)


def test_deserialize_rejects_bad_point(form):
    data = json.loads(serialize(encode(form)))
    data["position"]["rightEar"] = [0.1]
    with pytest.raises(ConfigFormatError):
        deserialize(json.dumps(data))


def test_decode_restores_form_values(form):
    restored = decode(encode(form))

    assert restored["input_device"] == "usb-in"
    assert restored["output_device"] == "spk0"
    assert restored["master_latency"] == 80
    assert restored["speaker_coord_lx"] == -60
    assert restored["speaker_coord_ry"] == 60
    assert restored["interaural_distance"] == 16
    assert restored["listener_coord_x"] == 0
    assert restored["master_gain"] == 75
    assert restored["canceling_attenuation"] == 70
    assert restored["wet_dry"] == 100
    assert restored["lowpass_cutoff_min"] == 800
    assert restored["temperature"] == 20


@pytest.mark.parametrize("distance", [0, 1, 15, 16, 17, 29, 33])
def test_interaural_distance_survives_storage(distance):
    config = deserialize(serialize(encode({"listener_coord_x": 37, "interaural_distance": distance})))
    restored = decode(config)
    assert abs(restored["interaural_distance"] - distance) <= 1
    assert restored["listener_coord_x"] == 37


def test_decode_then_encode_is_stable(form):
    config = encode(form)
    assert encode(decode(config)) == config


@pytest.mark.parametrize("field", ["speaker_coord_lx", "master_gain", "wet_dry"])
def test_decode_rounds_to_nearest_unit(field):
    # 0.29 * 100 is 28.999999999999996 in binary floating point
    restored = decode(deserialize(serialize(encode({field: 29}))))
    assert restored[field] == 29
