"""Config parsing and startup warnings."""

from __future__ import annotations

from forge3d.config import ChargePolicy
from forge3d.tests.conftest import make_config


def test_database_url_passed_through():
    cfg = make_config(_DATABASE_URL_RAW="postgresql://db.internal/forge3d")
    assert cfg.DATABASE_URL == "postgresql://db.internal/forge3d"
    assert cfg.HAS_DATABASE is True
    assert not hasattr(cfg, "IS_RENDER")


def test_summary_has_no_hosting_lines(capsys):
    make_config().log_summary()
    out = capsys.readouterr().out
    assert "[CONFIG] Forge3D Backend Configuration" in out
    assert "Render" not in out


def test_unknown_charge_policy_warns():
    warnings = make_config(CHARGE_POLICY="later").validate()
    assert any("CHARGE_POLICY" in w and ChargePolicy.ON_SUCCESS in w for w in warnings)
