"""Tests for UsageCapture bookkeeping that do not start coverage."""

from __future__ import annotations

from pathlib import Path
import sys
from types import ModuleType

import pytest

from pytest_testedby.usage.capture import UsageCapture


TEST_IDS = {
    Path('/project/tests/test_cart.py'): 'test_cart',
    Path('/project/tests/test_users.py'): 'test_users',
}


class FakeItem:
    """Just enough of pytest.Item for the capture hooks."""

    def __init__(self, path):
        self.path = Path(path)


def run_item(capture, item, *, raises=None):
    """Drive the runtest_protocol wrapper the way pluggy does."""
    wrapper = capture.pytest_runtest_protocol(item)
    next(wrapper)
    try:
        if raises is not None:
            wrapper.throw(raises)
        else:
            wrapper.send(True)
    except StopIteration:
        pass


@pytest.fixture
def capture(tmp_path):
    # a missing source root means coverage never starts
    return UsageCapture([tmp_path / 'missing'], TEST_IDS.get, lambda path: None)


@pytest.fixture
def items():
    return [
        FakeItem('/project/tests/test_cart.py'),
        FakeItem('/project/tests/test_cart.py'),
        FakeItem('/project/tests/test_users.py'),
        FakeItem('/project/src/shop/cart.py'),
    ]


@pytest.mark.small
class TestExecutedTests:
    """Tests for deciding which test modules ran completely."""

    def test_nothing_ran(self, capture, items):
        capture.pytest_collection_modifyitems(items)

        assert capture.executed_tests == set()

    def test_module_with_all_items_finished_is_executed(self, capture, items):
        capture.pytest_collection_modifyitems(items)
        for item in items:
            run_item(capture, item)

        assert capture.executed_tests == {'test_cart', 'test_users'}

    def test_partly_run_module_is_not_executed(self, capture, items):
        capture.pytest_collection_modifyitems(items)
        run_item(capture, items[0])
        run_item(capture, items[2])

        assert capture.executed_tests == {'test_users'}

    def test_interrupted_item_does_not_count(self, capture, items):
        capture.pytest_collection_modifyitems(items)
        run_item(capture, items[0])
        with pytest.raises(KeyboardInterrupt):
            run_item(capture, items[1], raises=KeyboardInterrupt())

        assert 'test_cart' not in capture.executed_tests

    def test_report_lists_executed_tests_with_empty_usage(self, capture, items):
        capture.pytest_collection_modifyitems(items)
        for item in items:
            run_item(capture, item)
        capture.stop()

        report = capture.report()

        assert report.usage == {'test_cart': frozenset(), 'test_users': frozenset()}
        assert report.exit_code == 0

    def test_start_without_source_roots_is_a_no_op(self, capture):
        capture.start()
        capture.stop()

        assert capture.report().usage == {}


@pytest.mark.small
class TestProductionModules:
    """Tests for finding the loaded production modules."""

    def test_only_modules_loaded_from_their_own_file_count(self, tmp_path, monkeypatch):
        cart_path = '/project/src/shop/cart.py'
        cart = ModuleType('shop.cart')
        cart.__file__ = cart_path
        alias = ModuleType('cart')
        alias.__file__ = cart_path
        monkeypatch.setitem(sys.modules, 'shop.cart', cart)
        monkeypatch.setitem(sys.modules, 'cart', alias)
        capture = UsageCapture([tmp_path], TEST_IDS.get, {cart_path: 'shop.cart'}.get)

        production = capture.production_modules()

        assert production['shop.cart'] is cart
        assert 'cart' not in production

    def test_modules_imported_later_are_picked_up(self, tmp_path, monkeypatch):
        users_path = '/project/src/shop/users.py'
        capture = UsageCapture([tmp_path], TEST_IDS.get, {users_path: 'shop.users'}.get)
        assert 'shop.users' not in capture.production_modules()
        users = ModuleType('shop.users')
        users.__file__ = users_path
        monkeypatch.setitem(sys.modules, 'shop.users', users)

        assert capture.production_modules()['shop.users'] is users
