"""Integration tests for the pytest-testedby plugin.

These run pytest in a subprocess so that coverage measurement and module
imports of the inner session stay separate from the outer one.
"""

from __future__ import annotations

import os
import time

import pytest


@pytest.fixture
def shop(pytester: pytest.Pytester) -> pytest.Pytester:
    """A project with a src layout and two test modules."""
    pytester.makepyprojecttoml(
        """
[tool.pytest.ini_options]
pythonpath = ["src"]
"""
    )
    pytester.mkdir('src')
    package = pytester.mkpydir('src/shop')
    (package / 'prices.py').write_text('TAX = 0.2\n\n\ndef with_tax(amount):\n    return amount * (1 + TAX)\n')
    (package / 'cart.py').write_text(
        'from shop.prices import with_tax\n\n\ndef total(amounts):\n    return with_tax(sum(amounts))\n'
    )
    (package / 'users.py').write_text('def display_name(first, last):\n    return f"{first} {last}"\n')
    tests = pytester.mkdir('tests')
    (tests / 'test_cart.py').write_text(
        'import pytest\n\nfrom shop.cart import total\n\n\n'
        'def test_total_adds_tax():\n    assert total([10, 20]) == pytest.approx(36)\n'
    )
    (tests / 'test_users.py').write_text(
        'from shop.users import display_name\n\n\n'
        'def test_display_name():\n    assert display_name("Ada", "Lovelace") == "Ada Lovelace"\n\n\n'
        'def test_display_name_empty_last():\n    assert display_name("Ada", "") == "Ada "\n'
    )
    return pytester


def touch_later(path):
    """Give a file a modification time well after any recorded run."""
    future = time.time() + 3600
    os.utime(path, (future, future))


@pytest.mark.medium
class TestPluginOptions:
    """Tests for option registration."""

    def test_help_lists_options(self, pytester: pytest.Pytester):
        result = pytester.runpytest('--help')

        result.stdout.fnmatch_lines(['*--testedby*', '*--testedby-source-roots*', '*--testedby-stale-millis*'])

    def test_plugin_is_inactive_without_flag(self, shop: pytest.Pytester):
        result = shop.runpytest_subprocess('tests')

        result.assert_outcomes(passed=3)
        assert not (shop.path / '.testedby_cache').exists()

    def test_invalid_configuration_is_a_usage_error(self, shop: pytest.Pytester):
        result = shop.runpytest_subprocess('--testedby', '--testedby-stale-millis=-1', 'tests')

        assert result.ret == pytest.ExitCode.USAGE_ERROR
        result.stderr.fnmatch_lines(['*stale_millis must be >= 0*'])


@pytest.mark.medium
class TestSelectiveRuns:
    """Tests for selection across consecutive sessions."""

    def test_first_run_runs_everything_and_records(self, shop: pytest.Pytester):
        result = shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(passed=3)
        result.stdout.fnmatch_lines(['*testedby*', 'Selected: 2 of 2 test modules', '*No usage data recorded yet*'])
        cache = shop.path / '.testedby_cache'
        assert (cache / 'runs.db').exists()
        assert (cache / 'test_runs.db').exists()
        assert (cache / 'usage.db').exists()

    def test_unchanged_second_run_deselects_everything(self, shop: pytest.Pytester):
        shop.runpytest_subprocess('--testedby', 'tests')

        result = shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(deselected=3)
        assert result.ret == pytest.ExitCode.OK

    def test_changed_dependency_selects_its_tests(self, shop: pytest.Pytester):
        shop.runpytest_subprocess('--testedby', 'tests')
        touch_later(shop.path / 'src' / 'shop' / 'prices.py')

        result = shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(passed=1, deselected=2)
        result.stdout.fnmatch_lines(['  test_cart'])

    def test_changed_test_module_selects_itself(self, shop: pytest.Pytester):
        shop.runpytest_subprocess('--testedby', 'tests')
        touch_later(shop.path / 'tests' / 'test_users.py')

        result = shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(passed=2, deselected=1)

    def test_keyword_filtered_module_stays_pending(self, shop: pytest.Pytester):
        shop.runpytest_subprocess('--testedby', 'tests')
        touch_later(shop.path / 'src' / 'shop' / 'users.py')
        shop.runpytest_subprocess('--testedby', '-k', 'empty_last', 'tests')

        result = shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(passed=2, deselected=1)

    def test_custom_cache_dir(self, shop: pytest.Pytester):
        result = shop.runpytest_subprocess('--testedby', '--testedby-cache-dir=.selection', 'tests')

        result.assert_outcomes(passed=3)
        assert (shop.path / '.selection' / 'usage.db').exists()


@pytest.mark.medium
class TestSharedImports:
    """Tests for production modules imported by more than one test module."""

    @pytest.fixture
    def configured_shop(self, shop: pytest.Pytester) -> pytest.Pytester:
        (shop.path / 'src' / 'shop' / 'config.py').write_text('CURRENCY = "EUR"\n')
        tests = shop.path / 'tests'
        (tests / 'test_a.py').write_text(
            'from shop.config import CURRENCY\n\n\ndef test_currency():\n    assert CURRENCY == "EUR"\n'
        )
        (tests / 'test_b.py').write_text(
            'from shop import config\n\n\ndef test_currency():\n    assert config.CURRENCY == "EUR"\n'
        )
        (tests / 'test_c.py').write_text(
            'from shop.config import CURRENCY\n\n\ndef test_currency_code_length():\n    assert len(CURRENCY) == 3\n'
        )
        return shop

    def test_every_importer_is_selected_after_a_change(self, configured_shop: pytest.Pytester):
        configured_shop.runpytest_subprocess('--testedby', 'tests')
        touch_later(configured_shop.path / 'src' / 'shop' / 'config.py')

        result = configured_shop.runpytest_subprocess('--testedby', 'tests')

        result.assert_outcomes(passed=3, deselected=3)
        result.stdout.fnmatch_lines(['  test_a', '  test_b', '  test_c'])
