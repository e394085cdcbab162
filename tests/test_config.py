# -*- coding: utf-8 -*-
"""
配置系统测试

覆盖:
- 默认值与预设、构造期硬约束（ConfigurationError）
- YAML / JSON 往返
- 环境变量与 --set 覆盖的优先级
- validate_config 的跨块提示
"""

import sys
from pathlib import Path

import pytest

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from exmc.core.errors import ConfigurationError
from exmc.utils.config import (
    Config,
    ExchangeConfig,
    ModelConfig,
    RunConfig,
    from_args,
    get_preset_config,
    load_config,
    load_from_env,
    merge_configs,
    save_config,
    validate_config,
)


def test_defaults_are_valid():
    cfg = Config()
    assert cfg.exchange.num_replicas == 16
    assert cfg.exchange.pairing == "alternating"
    assert cfg.exchange.optimization == "none"
    assert cfg.model.L % 2 == 0


@pytest.mark.parametrize("name", ["quick", "standard", "calibrate"])
def test_presets(name):
    cfg = get_preset_config(name)
    assert isinstance(cfg, Config)
    assert get_preset_config(name) is not cfg


def test_unknown_preset():
    with pytest.raises(ValueError):
        get_preset_config("huge")


@pytest.mark.parametrize("kwargs", [
    dict(num_replicas=1),
    dict(pairing="even_odd"),
    dict(optimization="annealing"),
    dict(num_replicas=3, betas=[0.1, 0.2]),
    dict(beta_min=0.3, beta_max=0.3),
    dict(spacing="geom", beta_min=0.0),
    dict(optimization="rate", stage_sweeps=0),
    dict(stage_growth=1.0),
    dict(interval=0),
])
def test_exchange_constraints(kwargs):
    with pytest.raises(ConfigurationError):
        ExchangeConfig(**kwargs)


def test_model_and_run_constraints():
    with pytest.raises(ConfigurationError):
        ModelConfig(L=5)
    with pytest.raises(ConfigurationError):
        RunConfig(resume=True)
    with pytest.raises(ConfigurationError):
        RunConfig(n_processes=0)
    with pytest.raises(ValueError):
        RunConfig(sweeps=-3)


def test_yaml_and_json_roundtrip(tmp_path):
    cfg = get_preset_config("calibrate")
    for suffix in (".yaml", ".json"):
        path = tmp_path / f"cfg{suffix}"
        save_config(cfg, str(path))
        back = load_config(str(path))
        assert back.to_dict() == cfg.to_dict()


def test_load_missing_or_unknown_format(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))
    odd = tmp_path / "cfg.toml"
    odd.write_text("x = 1")
    with pytest.raises(ValueError):
        load_config(str(odd))


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("EXMCTEST__exchange__num_replicas", "32")
    monkeypatch.setenv("EXMCTEST__exchange__pairing", "random")
    monkeypatch.setenv("EXMCTEST__run__resume", "false")
    over = load_from_env("EXMCTEST")
    assert over == {"exchange": {"num_replicas": 32, "pairing": "random"}, "run": {"resume": False}}
    cfg = merge_configs(Config(), over)
    assert cfg.exchange.num_replicas == 32
    assert cfg.exchange.pairing == "random"


def test_from_args_priority(tmp_path, monkeypatch):
    path = tmp_path / "base.yaml"
    save_config(get_preset_config("quick"), str(path))
    monkeypatch.setenv("EXMCARGS__exchange__num_replicas", "6")
    cfg = from_args([
        "--config", str(path),
        "--env-prefix", "EXMCARGS",
        "--set", "exchange.num_replicas=8",
        "--set", "run.sweeps=50",
        "--launcher", "serial",
    ])
    assert cfg.exchange.num_replicas == 8
    assert cfg.run.sweeps == 50
    assert cfg.model.L == 8


def test_set_requires_key_value():
    with pytest.raises(ValueError):
        from_args(["--set", "exchange.num_replicas"])


def test_validate_config_issues():
    cfg = Config(
        exchange=ExchangeConfig(num_replicas=2),
        run=RunConfig(n_processes=4, checkpoint_interval=10, seed=1),
    )
    ok, issues = validate_config(cfg)
    assert not ok
    assert any("n_processes" in s for s in issues)
    assert any("checkpoint" in s for s in issues)

    ok, issues = validate_config(get_preset_config("quick"))
    assert ok and issues == []
