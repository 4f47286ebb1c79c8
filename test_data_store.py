"""
Primary data store and settings
================================

data.json is read wholesale and written wholesale. A missing or broken
file loads as an empty DataSet; settings always resolve to defaults for
keys that were never saved.
"""

import json
import os

import pytest

from rent_manager import (
    COLLECTIONS,
    DEFAULT_SETTINGS,
    InvalidFormat,
    StorageError,
    load_data,
    load_settings,
    save_data,
    save_settings,
)


def test_load_without_file_returns_empty_collections(ctx):
    data = load_data(ctx)
    assert data == {name: [] for name in COLLECTIONS}


def test_save_then_load_round_trip(ctx, sample_data):
    save_data(ctx, sample_data)
    assert load_data(ctx) == sample_data


def test_saved_file_is_pretty_printed_utf8(ctx, sample_data):
    sample_data["properties"][0]["address"] = "רחוב הרצל 12"
    save_data(ctx, sample_data)

    with open(ctx.data_file_path, encoding="utf-8") as f:
        content = f.read()

    assert '\n  "properties": [' in content
    assert "רחוב הרצל 12" in content
    assert not os.path.exists(ctx.data_file_path + ".tmp")


def test_invalid_json_loads_as_empty(ctx):
    with open(ctx.data_file_path, "w", encoding="utf-8") as f:
        f.write("{ not json")
    assert load_data(ctx) == {name: [] for name in COLLECTIONS}


def test_non_object_json_loads_as_empty(ctx):
    with open(ctx.data_file_path, "w", encoding="utf-8") as f:
        json.dump([1, 2, 3], f)
    assert load_data(ctx)["tenants"] == []


def test_missing_collections_are_filled(ctx):
    with open(ctx.data_file_path, "w", encoding="utf-8") as f:
        json.dump({"properties": [{"id": "p"}], "tenants": []}, f)

    data = load_data(ctx)
    assert data["properties"] == [{"id": "p"}]
    assert data["events"] == data["expenses"] == data["payments"] == []


def test_save_rejects_non_object(ctx):
    with pytest.raises(InvalidFormat):
        save_data(ctx, ["not", "a", "dataset"])


def test_save_failure_raises_storage_error_and_cleans_temp(ctx, sample_data):
    # A directory where data.json should be makes the final rename fail
    os.makedirs(ctx.data_file_path)

    with pytest.raises(StorageError):
        save_data(ctx, sample_data)
    assert not os.path.exists(ctx.data_file_path + ".tmp")


# ================================================================
# Settings
# ================================================================


def test_settings_default_when_missing(ctx):
    assert load_settings(ctx) == DEFAULT_SETTINGS


def test_settings_overrides_merge_over_defaults(ctx):
    save_settings(ctx, {"theme": "dark", "notifyLeaseDays": 10})

    settings = load_settings(ctx)
    assert settings["theme"] == "dark"
    assert settings["notifyLeaseDays"] == 10
    assert settings["currencySymbol"] == "₪"
    assert settings["customFields"] == []


def test_broken_settings_file_falls_back_to_defaults(ctx):
    with open(ctx.settings_file_path, "w", encoding="utf-8") as f:
        f.write("{{{")
    assert load_settings(ctx) == DEFAULT_SETTINGS


def test_default_custom_fields_are_not_shared(ctx):
    load_settings(ctx)["customFields"].append("parking")
    assert DEFAULT_SETTINGS["customFields"] == []
