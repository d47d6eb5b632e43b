"""Tests for plugin helpers that do not need a pytest session."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from pytest_testedby import __version__
from pytest_testedby.plugin import build_config


def fake_config(rootpath, **options):
    values = {
        'testedby_source_roots': None,
        'testedby_test_roots': None,
        'testedby_cache_dir': None,
        'testedby_stale_millis': None,
        'testedby_verbose': False,
    }
    values.update(options)
    return SimpleNamespace(rootpath=rootpath, option=SimpleNamespace(**values))


@pytest.mark.small
class TestBuildConfig:
    """Tests for building the configuration from pytest options."""

    def test_options_override_pyproject(self, tmp_path):
        (tmp_path / 'pyproject.toml').write_text('[tool.pytest-testedby]\nsource_roots = ["lib"]\nstale_millis = 5\n')

        config = build_config(fake_config(tmp_path, testedby_source_roots='app', testedby_verbose=True))

        assert config.rootdir == tmp_path
        assert config.source_roots == ('app',)
        assert config.stale_millis == 5
        assert config.verbose is True

    def test_configuration_error_becomes_usage_error(self, tmp_path):
        (tmp_path / 'pyproject.toml').write_text('[tool.pytest-testedby]\ntest_roots = 3\n')

        with pytest.raises(pytest.UsageError, match='pytest-testedby: .*test_roots'):
            build_config(fake_config(tmp_path))


@pytest.mark.small
def test_version_is_a_string():
    assert isinstance(__version__, str)
    assert __version__.count('.') == 2
