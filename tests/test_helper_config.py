from __future__ import annotations

from pathlib import Path

import pytest


def test_string_val_strips_and_falls_back(helper_config, monkeypatch):
    monkeypatch.setenv("MAIL_TEST_VALUE", "  spaced  ")
    monkeypatch.setenv("MAIL_TEST_EMPTY", "")

    assert helper_config.get_string_val("mail_test_value") == "spaced"
    assert helper_config.get_string_val("MAIL_TEST_EMPTY", default="fallback") == "fallback"


def test_missing_required_value_raises(helper_config, monkeypatch):
    monkeypatch.delenv("MAIL_TEST_MISSING", raising=False)

    with pytest.raises(ValueError):
        helper_config.get_string_val("MAIL_TEST_MISSING")
    with pytest.raises(ValueError):
        helper_config.get_number_val("MAIL_TEST_MISSING")


def test_number_and_bool_values(helper_config, monkeypatch):
    monkeypatch.setenv("MAIL_TEST_INT", "60")
    monkeypatch.setenv("MAIL_TEST_FLOAT", "0.5")
    monkeypatch.setenv("MAIL_TEST_BOOL", "Yes")
    monkeypatch.setenv("MAIL_TEST_BAD", "sixty")

    assert helper_config.get_number_val("MAIL_TEST_INT") == 60
    assert helper_config.get_number_val("MAIL_TEST_FLOAT") == 0.5
    assert helper_config.get_bool_val("MAIL_TEST_BOOL") is True
    assert helper_config.get_bool_val("MAIL_TEST_UNSET_BOOL", default=False) is False
    with pytest.raises(ValueError):
        helper_config.get_number_val("MAIL_TEST_BAD")


def test_relative_paths_resolve_against_root_dir(helper_config, monkeypatch, tmp_path):
    monkeypatch.setenv("ROOT_DIR", str(tmp_path))
    monkeypatch.setenv("MAIL_TEST_PATH", "data/mail")

    assert helper_config.get_path_val("MAIL_TEST_PATH") == tmp_path / "data" / "mail"
    assert helper_config.get_path_val("MAIL_TEST_UNSET_PATH", default="/srv/mail") == Path("/srv/mail")
