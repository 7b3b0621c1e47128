"""Tests for the marketing model lookup of Intel Macs."""

import plistlib

import pytest

from outset import sysinfo


@pytest.fixture
def intel_mac(tmp_path, monkeypatch):
    resources = tmp_path / "Resources"
    (resources / "en.lproj").mkdir(parents=True)
    with open(resources / "en.lproj" / "SIMachineAttributes.plist", "wb") as f:
        plistlib.dump({
            "MacBookPro16,1": {"_LOCALIZABLE_": {"marketingModel": "MacBook Pro (16-inch, 2019)"}},
            "Macmini8,1": {"hardwareImageName": "macmini"},
        }, f)

    model = {"value": "MacBookPro16,1"}

    def command_output(argv):
        return model["value"] if argv[-1] == "hw.model" else ""

    monkeypatch.setattr(sysinfo, "SERVER_INFO_RESOURCES", resources)
    monkeypatch.setattr(sysinfo, "_is_macos", lambda: True)
    monkeypatch.setattr(sysinfo, "_command_output", command_output)
    monkeypatch.setattr(sysinfo, "_language", lambda: "en")
    return model


def test_intel_marketing_model(intel_mac):
    assert sysinfo.marketing_model() == "MacBook Pro (16-inch, 2019)"


def test_unlisted_or_unlocalized_model_falls_back_to_identifier(intel_mac):
    intel_mac["value"] = "iMac20,1"
    assert sysinfo.marketing_model() == "iMac20,1"

    intel_mac["value"] = "Macmini8,1"
    assert sysinfo.marketing_model() == "Macmini8,1"


def test_missing_attributes_file_falls_back_to_identifier(intel_mac, monkeypatch, tmp_path):
    monkeypatch.setattr(sysinfo, "SERVER_INFO_RESOURCES", tmp_path / "nowhere")
    assert sysinfo.marketing_model() == "MacBookPro16,1"
    assert sysinfo._intel_marketing_model("MacBookPro16,1", language="fr") == "MacBookPro16,1"
