"""Tests for the testedby command-line interface."""

from __future__ import annotations

import os

import pytest

from pytest_testedby import __version__
from pytest_testedby.cli import EXIT_ERROR, EXIT_OK, EXIT_TESTS_FAILED, build_parser, main
from pytest_testedby.runners import PytestRunner
from pytest_testedby.usage.collector import UsageReport


BASE_MILLIS = 1_700_000_000_000


def write(path, text='x = 1\n'):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    ns = BASE_MILLIS * 1_000_000
    os.utime(path, ns=(ns, ns))


@pytest.fixture
def project(tmp_path):
    write(tmp_path / 'src' / 'shop' / 'cart.py')
    write(tmp_path / 'tests' / 'test_cart.py')
    return tmp_path


@pytest.fixture
def fake_pytest_run(monkeypatch):
    """Replace the pytest runner with one that reports canned results."""
    calls = []
    exit_code = [0]

    def run(self, tests, capture):
        calls.append([unit.module for unit in tests])
        return UsageReport(exit_code=exit_code[0], usage={unit.module: frozenset() for unit in tests})

    monkeypatch.setattr(PytestRunner, 'run', run)
    return calls, exit_code


@pytest.mark.small
class TestBuildParser:
    """Tests for argument parsing."""

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_options(self, tmp_path):
        args = build_parser().parse_args(
            ['run', '--rootdir', str(tmp_path), '--source-roots', 'lib', '--stale-millis', '250', '-v']
        )

        assert args.command == 'run'
        assert args.rootdir == tmp_path
        assert args.source_roots == 'lib'
        assert args.stale_millis == 250
        assert args.verbose is True

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['--version'])

        assert __version__ in capsys.readouterr().out


@pytest.mark.medium
class TestMain:
    """Tests for running the command against a project directory."""

    def test_select_prints_plan_without_recording(self, project, capsys):
        exit_code = main(['select', '--rootdir', str(project)])

        assert exit_code == EXIT_OK
        assert 'Selected: 1 of 1 test module' in capsys.readouterr().out
        assert not (project / '.testedby_cache').exists()

    def test_run_records_and_second_run_selects_nothing(self, project, fake_pytest_run, capsys):
        calls, _ = fake_pytest_run

        assert main(['run', '--rootdir', str(project)]) == EXIT_OK
        assert main(['run', '--rootdir', str(project)]) == EXIT_OK

        assert calls == [['test_cart']]
        assert (project / '.testedby_cache' / 'usage.db').exists()

    def test_failing_tests_exit_with_one(self, project, fake_pytest_run):
        _, exit_code = fake_pytest_run
        exit_code[0] = 1

        assert main(['run', '--rootdir', str(project)]) == EXIT_TESTS_FAILED

    def test_invalid_stale_millis_is_an_error(self, project, capsys):
        assert main(['select', '--rootdir', str(project), '--stale-millis', '-1']) == EXIT_ERROR
        assert 'stale_millis' in capsys.readouterr().err

    def test_unknown_runner_is_an_error(self, project):
        assert main(['run', '--rootdir', str(project), '--runner', 'maven']) == EXIT_ERROR

    def test_module_collision_is_an_error(self, project, capsys):
        write(project / 'lib' / 'shop' / 'cart.py')

        exit_code = main(['select', '--rootdir', str(project), '--source-roots', 'src,lib'])

        assert exit_code == EXIT_ERROR
        assert 'shop.cart' in capsys.readouterr().err
