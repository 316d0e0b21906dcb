# Tests for DiaLoop.utils.config

import pytest
import json
import yaml
from DiaLoop.utils.config import load_config, get_config_value, ConfigManager, DEFAULT_CONFIG_FILENAME
from DiaLoop.core.engine_config import EngineConfig, ProfileStyle

@pytest.fixture
def preferences_yaml_file(tmp_path):
    content = {
        "engine": {
            "profile": "aggressive",
            "max_bolus_day": 2.0,
            "max_bolus_night": 0.8,
        },
        "learning": {"store_path": str(tmp_path / "learning.yaml")}
    }
    file_path = tmp_path / "prefs.yaml"
    with open(file_path, "w") as f:
        yaml.dump(content, f)
    return file_path

@pytest.fixture
def preferences_json_file(tmp_path):
    content = {
        "engine": {"profile": "strict", "max_bolus_day": 1.0},
        "learning": {}
    }
    file_path = tmp_path / "prefs.json"
    with open(file_path, "w") as f:
        json.dump(content, f)
    return file_path

def test_load_config_yaml(preferences_yaml_file):
    """Test loading from a YAML file."""
    config = load_config(str(preferences_yaml_file))
    assert config["engine"]["profile"] == "aggressive"
    assert config["engine"]["max_bolus_day"] == 2.0
    print("test_load_config_yaml: PASSED")

def test_load_config_json(preferences_json_file):
    """Test loading from a JSON file."""
    config = load_config(str(preferences_json_file))
    assert config["engine"]["profile"] == "strict"
    print("test_load_config_json: PASSED")

def test_load_config_non_existent_file():
    config = load_config("non_existent_config_file.yaml")
    assert config == {}

def test_load_config_unknown_format(tmp_path):
    file_path = tmp_path / "prefs.txt"
    with open(file_path, "w") as f:
        f.write("profile = aggressive")
    assert load_config(str(file_path)) == {}

def test_load_config_malformed_yaml(tmp_path):
    file_path = tmp_path / "broken.yaml"
    with open(file_path, "w") as f:
        f.write("engine: [unclosed\n  - x: {")
    assert load_config(str(file_path)) == {}

def test_load_config_non_mapping_document(tmp_path):
    file_path = tmp_path / "list.yaml"
    with open(file_path, "w") as f:
        yaml.dump([1, 2, 3], f)
    assert load_config(str(file_path)) == {}

def test_load_config_default_file(tmp_path, monkeypatch):
    """Test loading the default file when no path is provided."""
    with open(tmp_path / DEFAULT_CONFIG_FILENAME, "w") as f:
        yaml.dump({"engine": {"profile": "balanced"}}, f)
    monkeypatch.chdir(tmp_path)
    config = load_config()
    assert config["engine"]["profile"] == "balanced"
    print("test_load_config_default_file: PASSED")

def test_get_config_value():
    config = {
        "engine": {"max_bolus_day": 1.5, "nested": {"deep": "value"}},
        "top": 3,
    }
    assert get_config_value(config, "top") == 3
    assert get_config_value(config, "engine.max_bolus_day") == 1.5
    assert get_config_value(config, "engine.nested.deep") == "value"
    assert get_config_value(config, "engine.missing", "default") == "default"
    assert get_config_value(config, "top.below", 7) == 7

def test_config_manager_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    manager = ConfigManager()
    assert manager.config_data == {}
    assert manager.get_section("engine") == {}

def test_config_manager_from_data():
    manager = ConfigManager(config_data={"engine": {"profile": "strict"}})
    assert manager.get("engine.profile") == "strict"
    assert manager.get_section("engine.profile") == {}

def test_config_manager_reload_changes_engine_config(preferences_yaml_file, preferences_json_file):
    """A reload between cycles changes the configuration the next cycle sees."""
    manager = ConfigManager(str(preferences_yaml_file))
    before = EngineConfig.from_preferences(manager.get_section("engine"), is_night=False)
    assert before.profile == ProfileStyle.AGGRESSIVE
    assert before.max_smb == pytest.approx(2.0)

    manager.reload(str(preferences_json_file))
    after = EngineConfig.from_preferences(manager.get_section("engine"), is_night=False)
    assert after.profile == ProfileStyle.STRICT
    assert after.max_smb == pytest.approx(1.0)
    print("test_config_manager_reload_changes_engine_config: PASSED")

def test_night_selection_uses_night_maximum(preferences_yaml_file):
    manager = ConfigManager(str(preferences_yaml_file))
    night = EngineConfig.from_preferences(manager.get_section("engine"), is_night=True)
    assert night.max_smb == pytest.approx(0.8)
