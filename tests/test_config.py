import json
from pathlib import Path

from doctrans.config import DEFAULT_CONFIG, load_config
from run_translate import collect_inputs


def test_defaults_without_a_file():
    cfg = load_config()
    assert cfg == DEFAULT_CONFIG
    assert cfg is not DEFAULT_CONFIG
    assert cfg["memory"]["fuzzy_threshold"] == 0.85
    assert cfg["quality"]["register_threshold"] == 0.8


def test_file_and_overrides_merge_over_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"translation": {"scheduling": {"max_attempts": 2}}}), encoding="utf-8")
    cfg = load_config(path, overrides={"rebuild": {"partial": True}})
    assert cfg["translation"]["scheduling"]["max_attempts"] == 2
    assert cfg["translation"]["scheduling"]["call_timeout_seconds"] == 60.0
    assert cfg["rebuild"]["partial"] is True
    assert DEFAULT_CONFIG["rebuild"]["partial"] is False


def test_example_config_loads():
    cfg = load_config(Path(__file__).resolve().parents[1] / "config.example.json")
    assert cfg["style"]["languages"]["de"]["default"]["forbidden_terms"] == ["du", "dich", "dein"]
    assert cfg["style"]["default"]["max_length_ratio"] == 2.5


def test_collect_inputs_expands_folders(tmp_path):
    for name in ("b.xliff", "a.xlf", "notes.txt"):
        (tmp_path / name).write_text("", encoding="utf-8")
    single = tmp_path / "c.xml"
    assert collect_inputs([str(tmp_path), str(single)]) == [tmp_path / "a.xlf", tmp_path / "b.xliff", single]
