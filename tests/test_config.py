import tomllib
from pathlib import Path

import pytest

from layergate import __version__
from layergate.config import (
    CriterionConfig,
    LayergateConfig,
    StageConfig,
    dumps_toml,
    load_config,
    save_config,
)
from layergate.errors import ConfigurationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "layergate.toml"
    config = LayergateConfig.default()
    config.pipeline.id = "brake-ecu"
    config.pipeline.rework_limit = 5
    config.pipeline.default_timeout_seconds = 120.5
    config.stages[0].command = "python agents/requirements.py --strict"
    config.stages[3].timeout_seconds = 30.0
    config.classification["stack_overflow"] = "static_analysis"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.pipeline.id == "brake-ecu"
    assert loaded.pipeline.rework_limit == 5
    assert loaded.pipeline.default_timeout_seconds == 120.5
    assert [stage.id for stage in loaded.stages] == [stage.id for stage in config.stages]
    assert loaded.stages[0].command == "python agents/requirements.py --strict"
    assert loaded.stages[3].timeout_seconds == 30.0
    assert loaded.stages[3].criteria[0].operator == "eq"
    assert loaded.stages[3].criteria[0].value == 0
    assert loaded.stages[8].criteria == []
    assert loaded.classification["stack_overflow"] == "static_analysis"


def test_missing_file_yields_reference_pipeline(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    stages = config.build_stages()

    assert len(stages) == 9
    assert stages[0].stage_id == "requirements"
    assert stages[-1].stage_id == "safety_assessment"
    assert all(stage.criteria for stage in stages[:-1])
    assert all(stage.timeout_seconds == 600.0 for stage in stages)


def test_toml_dump_contains_sections() -> None:
    rendered = dumps_toml(LayergateConfig.default())
    parsed = tomllib.loads(rendered)

    assert "[pipeline]" in rendered
    assert "[classification]" in rendered
    assert "[[stages.criteria]]" in rendered
    assert parsed["pipeline"]["rework_limit"] == 3
    assert len(parsed["stages"]) == 9


def test_build_stages_rejects_unknown_operator() -> None:
    config = LayergateConfig(
        stages=[
            StageConfig(
                id="only",
                criteria=[CriterionConfig(name="odd", field="handoff.x", operator="approx")],
            )
        ]
    )

    with pytest.raises(ConfigurationError, match="unknown operator"):
        config.build_stages()


def test_invalid_keys_raise_configuration_error(tmp_path: Path) -> None:
    config_path = tmp_path / "layergate.toml"
    config_path.write_text("[pipeline]\nrework_cap = 2\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
