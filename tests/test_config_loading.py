from __future__ import annotations

import json
from pathlib import Path

import pytest

from insitutype.config import config_from_params, load_json_config, resolve_config
from insitutype.core.types import InsitutypeConfig


def test_load_json_config_roundtrips_into_run_config(tmp_path: Path):
    cfg_path = tmp_path / "run.json"
    cfg_path.write_text(json.dumps({"n_starts": 3, "method": "em", "align_genes": False}), encoding="utf-8")
    cfg = config_from_params(load_json_config(cfg_path))
    assert cfg.n_starts == 3
    assert cfg.method == "EM"
    assert cfg.align_genes is False
    assert cfg.n_phase1 == InsitutypeConfig().n_phase1


def test_invalid_json_reports_line_and_column(tmp_path: Path):
    bad = tmp_path / "bad.json"
    bad.write_text('{"a": 1,}\n', encoding="utf-8")
    with pytest.raises(ValueError, match=r"line \d+, column \d+"):
        load_json_config(bad)


def test_non_object_json_config_rejected(tmp_path: Path):
    bad = tmp_path / "list.json"
    bad.write_text(json.dumps([1, 2, 3]), encoding="utf-8")
    with pytest.raises(ValueError, match="expected a JSON object"):
        load_json_config(bad)


def test_non_json_extension_rejected(tmp_path: Path):
    bad = tmp_path / "cfg.yaml"
    bad.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="not a .json file"):
        load_json_config(bad)


def test_missing_config_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_json_config(tmp_path / "nope.json")


def test_parameters_may_sit_under_a_named_section(tmp_path: Path):
    cfg_path = tmp_path / "shared.json"
    cfg_path.write_text(json.dumps({"plotting": {"dpi": 300}, "insitutype": {"max_iters": 7}}), encoding="utf-8")
    assert load_json_config(cfg_path) == {"max_iters": 7}


def test_resolve_config_reads_a_path_and_applies_overrides(tmp_path: Path):
    cfg_path = tmp_path / "run.json"
    cfg_path.write_text(json.dumps({"n_starts": 2, "max_iters": 9}), encoding="utf-8")
    cfg = resolve_config(str(cfg_path), {"max_iters": 3})
    assert cfg.n_starts == 2
    assert cfg.max_iters == 3
    assert resolve_config(None) == InsitutypeConfig()


def test_config_from_params_rejects_unknown_fields():
    with pytest.raises(ValueError, match="Unknown config field"):
        config_from_params({"n_startz": 3})


def test_config_from_params_type_checks_values():
    with pytest.raises(ValueError, match="'n_starts' must be an integer"):
        config_from_params({"n_starts": 2.5})
    with pytest.raises(ValueError, match="'align_genes' must be a boolean"):
        config_from_params({"align_genes": "yes"})
    cfg = config_from_params({"pct_drop": 1, "n_phase1": 100.0})
    assert cfg.pct_drop == 1.0 and isinstance(cfg.pct_drop, float)
    assert cfg.n_phase1 == 100 and isinstance(cfg.n_phase1, int)


def test_config_from_params_keeps_base():
    base = InsitutypeConfig(n_starts=4)
    assert config_from_params(None, base=base) is base
    assert config_from_params({"max_iters": 5}, base=base).n_starts == 4


def test_config_validation_names_field():
    with pytest.raises(ValueError, match="method"):
        InsitutypeConfig(method="kmeans")
    with pytest.raises(ValueError, match="n_phase2"):
        InsitutypeConfig(n_phase2=0)
    with pytest.raises(ValueError, match="cluster_criterion"):
        InsitutypeConfig(cluster_criterion="dic")


def test_engine_config_derives_phase_tolerances():
    cfg = InsitutypeConfig(pct_drop=1e-3, max_iters=12, nb_size=5)
    engine = cfg.engine_config(pct_drop=1e-2)
    assert engine.pct_drop == pytest.approx(1e-2)
    assert engine.max_iters == 12
    assert engine.nb_size == 5.0
    assert cfg.engine_config(max_iters=3).max_iters == 3
