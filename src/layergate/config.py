from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from layergate.errors import ConfigurationError
from layergate.models import CRITERION_OPERATORS, GateCriterion, Stage
from layergate.routing import DEFAULT_CLASSIFICATION, DEFAULT_REWORK_LIMIT

BARE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class PipelineSection:
    id: str = "component-build"
    rework_limit: int = DEFAULT_REWORK_LIMIT
    default_timeout_seconds: float = 600.0


@dataclass(slots=True)
class CriterionConfig:
    name: str
    field: str
    operator: str = "is_true"
    value: Any = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "field": self.field, "operator": self.operator}
        if self.value is not None:
            data["value"] = self.value
        if self.description:
            data["description"] = self.description
        return data


@dataclass(slots=True)
class StageConfig:
    id: str
    description: str = ""
    command: str = ""
    timeout_seconds: float | None = None
    criteria: list[CriterionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageConfig:
        payload = dict(data)
        criteria = [CriterionConfig(**item) for item in payload.pop("criteria", [])]
        return cls(criteria=criteria, **payload)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        if self.description:
            data["description"] = self.description
        if self.command:
            data["command"] = self.command
        if self.timeout_seconds is not None:
            data["timeout_seconds"] = self.timeout_seconds
        data["criteria"] = [criterion.to_dict() for criterion in self.criteria]
        return data


def _criterion(
    name: str, field_path: str, operator: str = "is_true", value: Any = None
) -> CriterionConfig:
    return CriterionConfig(name=name, field=field_path, operator=operator, value=value)


def reference_stages() -> list[StageConfig]:
    """Nine-layer verification pipeline used when no config file exists."""
    return [
        StageConfig(
            id="requirements",
            description="Requirements analysis and traceability.",
            criteria=[_criterion("all requirements traced", "handoff.requirements_traced")],
        ),
        StageConfig(
            id="architecture",
            description="Architecture and interface design.",
            criteria=[_criterion("interfaces defined", "handoff.interfaces_defined")],
        ),
        StageConfig(
            id="implementation",
            description="Implementation of the component build.",
            criteria=[_criterion("build succeeded", "handoff.build_succeeded")],
        ),
        StageConfig(
            id="static_analysis",
            description="Coding-standard and static analysis.",
            criteria=[
                _criterion(
                    "no mandatory-rule violations", "handoff.mandatory_violations", "eq", 0
                )
            ],
        ),
        StageConfig(
            id="unit_test",
            description="Unit and integration testing.",
            criteria=[_criterion("coverage target met", "handoff.coverage_percent", "ge", 90)],
        ),
        StageConfig(
            id="formal_verification",
            description="Formal proof of critical properties.",
            criteria=[
                _criterion("all obligations proven", "handoff.unproven_obligations", "eq", 0)
            ],
        ),
        StageConfig(
            id="timing_analysis",
            description="Worst-case execution time analysis.",
            criteria=[_criterion("no deadline misses", "handoff.deadline_misses", "eq", 0)],
        ),
        StageConfig(
            id="code_review",
            description="Independent code review.",
            criteria=[_criterion("review items closed", "handoff.open_review_items", "eq", 0)],
        ),
        StageConfig(
            id="safety_assessment",
            description="Safety case assessment and release recommendation.",
        ),
    ]


@dataclass(slots=True)
class LayergateConfig:
    pipeline: PipelineSection = field(default_factory=PipelineSection)
    stages: list[StageConfig] = field(default_factory=reference_stages)
    classification: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CLASSIFICATION))

    @classmethod
    def default(cls) -> LayergateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LayergateConfig:
        stages_data = data.get("stages")
        classification = data.get("classification")
        try:
            return cls(
                pipeline=PipelineSection(**data.get("pipeline", {})),
                stages=(
                    [StageConfig.from_dict(item) for item in stages_data]
                    if stages_data is not None
                    else reference_stages()
                ),
                classification=(
                    {str(key): str(value) for key, value in classification.items()}
                    if classification is not None
                    else dict(DEFAULT_CLASSIFICATION)
                ),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": {
                "id": self.pipeline.id,
                "rework_limit": self.pipeline.rework_limit,
                "default_timeout_seconds": self.pipeline.default_timeout_seconds,
            },
            "classification": dict(self.classification),
            "stages": [stage.to_dict() for stage in self.stages],
        }

    def build_stages(self) -> tuple[Stage, ...]:
        stages: list[Stage] = []
        for ordinal, stage_config in enumerate(self.stages, start=1):
            criteria: list[GateCriterion] = []
            for item in stage_config.criteria:
                if item.operator not in CRITERION_OPERATORS:
                    raise ConfigurationError(
                        f"Stage '{stage_config.id}' criterion '{item.name}' uses unknown "
                        f"operator '{item.operator}'."
                    )
                criteria.append(
                    GateCriterion(
                        name=item.name,
                        field_path=item.field,
                        operator=item.operator,
                        value=item.value,
                        description=item.description,
                    )
                )
            timeout = stage_config.timeout_seconds
            stages.append(
                Stage(
                    ordinal=ordinal,
                    stage_id=stage_config.id,
                    criteria=tuple(criteria),
                    timeout_seconds=float(
                        timeout if timeout is not None else self.pipeline.default_timeout_seconds
                    ),
                    description=stage_config.description,
                )
            )
        return tuple(stages)


def _toml_key(key: str) -> str:
    return key if BARE_KEY_PATTERN.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LayergateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = ["[pipeline]"]
    for key, value in data["pipeline"].items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    lines.append("[classification]")
    for key, value in data["classification"].items():
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    for stage in data["stages"]:
        lines.append("")
        lines.append("[[stages]]")
        for key, value in stage.items():
            if key == "criteria":
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        for criterion in stage["criteria"]:
            lines.append("")
            lines.append("[[stages.criteria]]")
            for key, value in criterion.items():
                lines.append(f"{key} = {_toml_value(value)}")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> LayergateConfig:
    if not path.exists():
        return LayergateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
    return LayergateConfig.from_dict(data)


def save_config(path: Path, config: LayergateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
