from pathlib import Path
import json
import textwrap

import pytest

from valkyr_engine.lifecycle import ConfigLoadError, LifecycleScriptsService, load_project_config


def write_json_config(project: Path, scripts: dict) -> None:
    (project / ".valkyr.json").write_text(json.dumps({"scripts": scripts}), encoding="utf-8")


def test_reads_trimmed_scripts_from_json(tmp_path: Path) -> None:
    write_json_config(tmp_path, {"setup": "  npm ci  ", "run": "npm run dev", "teardown": "   "})
    service = LifecycleScriptsService()

    assert service.get_script(str(tmp_path), "setup") == "npm ci"
    assert service.get_script(str(tmp_path), "run") == "npm run dev"
    assert service.get_script(str(tmp_path), "teardown") is None


def test_missing_config_yields_no_scripts(tmp_path: Path) -> None:
    service = LifecycleScriptsService()

    assert service.config_path(str(tmp_path)) is None
    assert service.get_script(str(tmp_path), "run") is None


def test_reads_yaml_config(tmp_path: Path) -> None:
    (tmp_path / ".valkyr.yaml").write_text(
        textwrap.dedent(
            """
            preservePatterns:
              - .env
            scripts:
              run: make serve
            """
        ).strip(),
        encoding="utf-8",
    )
    service = LifecycleScriptsService()

    config = service.read_config(str(tmp_path))
    assert config is not None
    assert config.preserve_patterns == [".env"]
    assert service.get_script(str(tmp_path), "run") == "make serve"
    assert service.get_script(str(tmp_path), "setup") is None


def test_json_takes_precedence_over_yaml(tmp_path: Path) -> None:
    write_json_config(tmp_path, {"run": "from-json"})
    (tmp_path / ".valkyr.yaml").write_text("scripts:\n  run: from-yaml\n", encoding="utf-8")

    service = LifecycleScriptsService()

    assert service.get_script(str(tmp_path), "run") == "from-json"


def test_custom_filenames(tmp_path: Path) -> None:
    (tmp_path / "lifecycle.yml").write_text("scripts:\n  setup: ./bootstrap.sh\n", encoding="utf-8")

    service = LifecycleScriptsService(["lifecycle.yml"])

    assert service.get_script(str(tmp_path), "setup") == "./bootstrap.sh"


def test_invalid_config_is_treated_as_absent(tmp_path: Path, caplog) -> None:
    (tmp_path / ".valkyr.json").write_text("{not json", encoding="utf-8")
    service = LifecycleScriptsService()

    with caplog.at_level("WARNING"):
        assert service.get_script(str(tmp_path), "run") is None
    assert "Failed to read project configuration" in caplog.text


def test_load_project_config_raises_on_bad_types(tmp_path: Path) -> None:
    path = tmp_path / ".valkyr.json"
    path.write_text(json.dumps({"scripts": {"run": ["npm", "start"]}}), encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        load_project_config(path)


def test_empty_yaml_is_an_empty_config(tmp_path: Path) -> None:
    path = tmp_path / ".valkyr.yml"
    path.write_text("", encoding="utf-8")

    config = load_project_config(path)

    assert config.scripts.run is None
    assert config.preserve_patterns == []
