"""Configuration loading for pytest-testedby.

This module reads configuration from the pyproject.toml
[tool.pytest-testedby] section, fills in defaults where it is absent, and
lets command-line values override file values.

The resulting TestedByConfig is a plain value object handed to the
orchestrator; nothing here touches process-wide state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
import tomllib
from typing import Any

from pytest_testedby.errors import ConfigurationError


DEFAULT_SOURCE_ROOTS: tuple[str, ...] = ('src',)
DEFAULT_TEST_ROOTS: tuple[str, ...] = ('tests',)
DEFAULT_CACHE_DIR = '.testedby_cache'
DEFAULT_INCLUDES: tuple[str, ...] = ('**/*.py',)
DEFAULT_TEST_INCLUDES: tuple[str, ...] = ('**/test_*.py', '**/*_test.py')
DEFAULT_RUNNER = 'pytest'

_LIST_KEYS = ('source_roots', 'test_roots', 'includes', 'excludes', 'test_includes', 'test_excludes')


@dataclass(frozen=True)
class TestedByConfig:
    """Configuration for pytest-testedby.

    Attributes:
        rootdir: Project directory relative paths are resolved against.
        source_roots: Directories holding production code.
        test_roots: Directories holding test modules.
        cache_dir: Directory holding the run history and usage stores.
        includes: Globs selecting production files within source roots.
        excludes: Globs removing production files.
        test_includes: Globs selecting test modules within test roots.
        test_excludes: Globs removing test modules.
        stale_millis: Modification time tolerance in milliseconds.
        runner: Name of the registered runner that executes tests.
        verbose: Log configuration and per-file details at DEBUG level.
    """

    __test__ = False

    rootdir: Path = field(default_factory=Path.cwd)
    source_roots: tuple[str, ...] = DEFAULT_SOURCE_ROOTS
    test_roots: tuple[str, ...] = DEFAULT_TEST_ROOTS
    cache_dir: str = DEFAULT_CACHE_DIR
    includes: tuple[str, ...] = DEFAULT_INCLUDES
    excludes: tuple[str, ...] = ()
    test_includes: tuple[str, ...] = DEFAULT_TEST_INCLUDES
    test_excludes: tuple[str, ...] = ()
    stale_millis: int = 0
    runner: str = DEFAULT_RUNNER
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate field values."""
        if isinstance(self.stale_millis, bool) or not isinstance(self.stale_millis, int):
            raise ConfigurationError(f'stale_millis must be an integer, got {self.stale_millis!r}')
        if self.stale_millis < 0:
            raise ConfigurationError(f'stale_millis must be >= 0, got {self.stale_millis}')
        if not self.runner:
            raise ConfigurationError('runner must be a non-empty string')
        if not isinstance(self.verbose, bool):
            raise ConfigurationError(f'verbose must be true or false, got {self.verbose!r}')

    def resolve(self, path: str) -> Path:
        """Resolve a configured path against rootdir."""
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.rootdir / candidate

    @property
    def source_paths(self) -> list[Path]:
        """Return the production source roots as absolute paths."""
        return [self.resolve(root) for root in self.source_roots]

    @property
    def test_paths(self) -> list[Path]:
        """Return the test roots as absolute paths."""
        return [self.resolve(root) for root in self.test_roots]

    @property
    def cache_path(self) -> Path:
        """Return the store directory as an absolute path."""
        return self.resolve(self.cache_dir)


def _string_list(key: str, value: Any) -> tuple[str, ...]:
    """Validate a list-of-strings option from pyproject.toml."""
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigurationError(f"[tool.pytest-testedby] '{key}' must be a list of strings")
    return tuple(value)


def _string(key: str, value: Any) -> str:
    """Validate a string option from pyproject.toml."""
    if not isinstance(value, str):
        raise ConfigurationError(f"[tool.pytest-testedby] '{key}' must be a string")
    return value


def load_config(rootdir: Path) -> TestedByConfig:
    """Load configuration from pyproject.toml.

    Reads the [tool.pytest-testedby] section from pyproject.toml in the
    given directory. Returns default configuration if the file or section
    does not exist.

    Args:
        rootdir: Directory containing pyproject.toml.

    Returns:
        TestedByConfig with values from pyproject.toml or defaults.

    Raises:
        ConfigurationError: If the file is not valid TOML or a value has
            the wrong type.
    """
    pyproject_path = rootdir / 'pyproject.toml'

    if not pyproject_path.exists():
        return TestedByConfig(rootdir=rootdir)

    try:
        with pyproject_path.open('rb') as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f'Invalid {pyproject_path}: {exc}') from exc

    tool_config = data.get('tool', {}).get('pytest-testedby', {})

    values: dict[str, Any] = {'rootdir': rootdir}
    for key in _LIST_KEYS:
        if key in tool_config:
            values[key] = _string_list(key, tool_config[key])
    for key in ('cache_dir', 'runner'):
        if key in tool_config:
            values[key] = _string(key, tool_config[key])
    if 'stale_millis' in tool_config:
        values['stale_millis'] = tool_config['stale_millis']
    if 'verbose' in tool_config:
        values['verbose'] = tool_config['verbose']

    return TestedByConfig(**values)


def _split(value: str | None) -> tuple[str, ...] | None:
    """Split a comma-separated CLI value, treating blank as not provided."""
    if value is None or not value.strip():
        return None
    return tuple(part.strip() for part in value.split(',') if part.strip())


def merge_configs(
    file_config: TestedByConfig,
    cli_source_roots: str | None = None,
    cli_test_roots: str | None = None,
    cli_cache_dir: str | None = None,
    cli_stale_millis: int | None = None,
    cli_runner: str | None = None,
    cli_verbose: bool | None = None,
) -> TestedByConfig:
    """Merge CLI arguments with file configuration.

    CLI arguments take precedence over pyproject.toml configuration.
    Empty strings are treated as not provided.

    Args:
        file_config: Configuration loaded from pyproject.toml.
        cli_source_roots: Comma-separated production source roots.
        cli_test_roots: Comma-separated test roots.
        cli_cache_dir: Store directory.
        cli_stale_millis: Staleness tolerance in milliseconds.
        cli_runner: Runner name.
        cli_verbose: Verbose logging flag; only True overrides.

    Returns:
        TestedByConfig with CLI values overriding file config where provided.
    """
    overrides: dict[str, Any] = {}

    source_roots = _split(cli_source_roots)
    if source_roots:
        overrides['source_roots'] = source_roots

    test_roots = _split(cli_test_roots)
    if test_roots:
        overrides['test_roots'] = test_roots

    if cli_cache_dir and cli_cache_dir.strip():
        overrides['cache_dir'] = cli_cache_dir.strip()

    if cli_stale_millis is not None:
        overrides['stale_millis'] = cli_stale_millis

    if cli_runner and cli_runner.strip():
        overrides['runner'] = cli_runner.strip()

    if cli_verbose:
        overrides['verbose'] = True

    return replace(file_config, **overrides)
