"""Tests for the kitty.conf font_size parser."""

import pytest

from zooming_kittens.conf_parser import get_kitty_config_path, parse_font_size
from zooming_kittens.errors import ConfigError


@pytest.fixture
def kitty_conf(tmp_path):
    def write(content):
        path = tmp_path / "kitty.conf"
        path.write_text(content)
        return path

    return write


def test_valid(kitty_conf):
    assert parse_font_size(kitty_conf("font_size 12.5\nother_config value\n")) == 12.5


def test_comments_and_indentation(kitty_conf):
    assert parse_font_size(kitty_conf("# font_size 99\n\n   font_size 14.0\n# trailing\n")) == 14.0


def test_integer(kitty_conf):
    assert parse_font_size(kitty_conf("font_size 12\n")) == 12.0


def test_similar_keys_are_not_font_size(kitty_conf):
    assert parse_font_size(kitty_conf("font_size_delta 2\nfont_size 11\n")) == 11.0


def test_not_found(kitty_conf):
    with pytest.raises(ConfigError, match="not found"):
        parse_font_size(kitty_conf("other_config value\n"))


def test_invalid(kitty_conf):
    with pytest.raises(ConfigError, match="Failed to parse"):
        parse_font_size(kitty_conf("font_size invalid\n"))


def test_empty(kitty_conf):
    with pytest.raises(ConfigError, match="has no value"):
        parse_font_size(kitty_conf("font_size\n"))


def test_unreadable(tmp_path):
    with pytest.raises(ConfigError, match="Failed to read"):
        parse_font_size(tmp_path)


def test_default_location(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    (tmp_path / "kitty").mkdir()
    (tmp_path / "kitty" / "kitty.conf").write_text("font_size 10\n")

    assert get_kitty_config_path() == tmp_path / "kitty" / "kitty.conf"
    assert parse_font_size() == 10.0


def test_missing_default_location(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    with pytest.raises(ConfigError, match="kitty.conf not found"):
        get_kitty_config_path()
