"""Unit tests for pipeline configuration loading and target resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from sluice.config import (
    CheckConfig,
    CheckKind,
    FastTrackConfig,
    PipelineConfig,
    StageConfig,
    load_config,
    resolve_config,
)
from sluice.errors import ConfigurationError
from sluice.schemas import Environment, GateStage

CONFIG_YAML = """\
project: shop
initial_version: 1.0.0
stages:
  lint:
    checks:
      - name: ruff
        command: ruff check .
  staging:
    mandatory: false
    checks:
      - name: p95-latency-ms
        kind: threshold
        command: ./measure-latency ${ROUTE}
        max_value: 250
  production:
    checks:
      - name: cosign
        kind: signature
        command: cosign verify ${ARTIFACT_REF}
environments:
  production:
    rollback_command: ./rollback ${VERSION}
timeouts:
  check_seconds: 300
targets:
  ci:
    database_url: "sqlite://"
    timeouts:
      check_seconds: 60
"""


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "sluice.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestResolveConfig:
    """Tests for the override-wins deep merge."""

    def test_nested_dicts_merge(self) -> None:
        base = {"timeouts": {"check_seconds": 300, "lane_wait_seconds": 60}}

        result = resolve_config(base, {"timeouts": {"check_seconds": 30}})

        assert result == {"timeouts": {"check_seconds": 30, "lane_wait_seconds": 60}}

    def test_lists_are_replaced(self) -> None:
        assert resolve_config({"webhooks": [1, 2]}, {"webhooks": [3]}) == {"webhooks": [3]}

    def test_inputs_are_not_modified(self) -> None:
        base = {"a": {"b": 1}}
        overrides = {"a": {"c": 2}}

        resolve_config(base, overrides)

        assert base == {"a": {"b": 1}}
        assert overrides == {"a": {"c": 2}}

    def test_type_mismatch_override_wins(self) -> None:
        assert resolve_config({"a": {"b": 1}}, {"a": "flat"}) == {"a": "flat"}


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_loads_file(self, config_path: Path) -> None:
        config = load_config(config_path)

        assert config.project == "shop"
        assert config.initial_version == "1.0.0"
        assert [c.name for c in config.stage(GateStage.LINT).checks] == ["ruff"]
        assert config.stage(GateStage.STAGING).mandatory is False
        assert config.stage(GateStage.STAGING).checks[0].kind is CheckKind.THRESHOLD
        assert config.commands_for(Environment.PRODUCTION).rollback_command == "./rollback ${VERSION}"
        assert config.commands_for(Environment.STAGING).deploy_command is None

    def test_target_overrides_apply(self, config_path: Path) -> None:
        config = load_config(config_path, target="ci")

        assert config.database_url == "sqlite://"
        assert config.timeouts.check_seconds == 60
        assert config.project == "shop"
        assert config.stage(GateStage.PRODUCTION).checks[0].name == "cosign"

    def test_unknown_target_raises(self, config_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Unknown target 'prod'"):
            load_config(config_path, target="prod")

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Cannot read configuration"):
            load_config(tmp_path / "absent.yaml")

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("stages: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Failed to parse YAML"):
            load_config(path)

    def test_non_mapping_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_config(path)

    def test_unknown_key_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "typo.yaml"
        path.write_text("projcet: shop\n")

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_config(path)

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == PipelineConfig()


class TestPipelineConfig:
    """Tests for schema validation."""

    def test_defaults(self) -> None:
        config = PipelineConfig()

        assert config.project == "default"
        assert config.database_url == "sqlite:///sluice.db"
        assert config.stage(GateStage.LINT) == StageConfig()
        assert config.timeouts.lane_wait_seconds is None

    def test_production_requires_signature_check(self) -> None:
        with pytest.raises(ValidationError, match="kind 'signature'"):
            PipelineConfig(
                stages={
                    GateStage.PRODUCTION: StageConfig(
                        checks=[CheckConfig(name="smoke", command="./smoke")]
                    )
                }
            )

    def test_threshold_requires_max_value(self) -> None:
        with pytest.raises(ValidationError, match="requires max_value"):
            CheckConfig(name="p95", kind=CheckKind.THRESHOLD, command="./measure")

    def test_config_is_frozen(self) -> None:
        config = PipelineConfig()

        with pytest.raises(ValidationError):
            config.project = "other"  # type: ignore[misc]


class TestFastTrackConfig:
    @pytest.mark.parametrize("command", ["fast-track", "/ship", "  /FAST-TRACK "])
    def test_fast_track_commands(self, command: str) -> None:
        assert FastTrackConfig().is_fast_track(command)

    def test_retry_commands(self) -> None:
        config = FastTrackConfig()

        assert config.is_retry("/retry")
        assert not config.is_fast_track("retry")
