"""Change detection over source roots.

The ChangeScanner walks source roots, filters files with Ant-style include
and exclude globs, and reports the files that are new or modified since
the run recorded for them in a RunHistoryStore.

The scanner only reads the store. Recording the new run time is the
caller's job, done once the rest of the pipeline has succeeded, so a
failed run never marks anything as processed.

Example:
    >>> from pytest_testedby.history.store import RunHistoryStore
    >>> scanner = ChangeScanner(['**/*.py'], [], 0, RunHistoryStore())
    >>> scanner.scan(['does/not/exist'])
    set()
"""

from __future__ import annotations

from dataclasses import dataclass
import functools
import logging
import os
from pathlib import Path, PurePosixPath
import re
from typing import TYPE_CHECKING

from pytest_testedby.errors import ConfigurationError


if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from pytest_testedby.history.store import RunHistoryStore


logger = logging.getLogger(__name__)

DEFAULT_INCLUDES: tuple[str, ...] = ('**/*.py',)
SOURCE_SUFFIX = '.py'


@dataclass(frozen=True)
class SourceUnit:
    """A scanned source file and the module name derived from it.

    Attributes:
        path: Absolute path of the file.
        module: Dotted module name, e.g. 'shop.cart' for 'shop/cart.py'.
        root: Source root the module name is relative to.
    """

    path: Path
    module: str
    root: Path


def module_name(path: Path, root: Path, suffix: str = SOURCE_SUFFIX) -> str:
    """Convert a file path under a source root to a dotted module name.

    The root prefix and the suffix are stripped and the remaining path
    parts are joined with dots. A package's __init__ file maps to the
    package itself.

    Args:
        path: Path of the source file.
        root: Source root the file lives under.
        suffix: Source file suffix to strip.

    Returns:
        The dotted module name.

    Raises:
        ValueError: If path is not under root.

    Example:
        >>> module_name(Path('/src/shop/cart.py'), Path('/src'))
        'shop.cart'
        >>> module_name(Path('/src/shop/__init__.py'), Path('/src'))
        'shop'
    """
    relative = PurePosixPath(path.relative_to(root).as_posix())
    parts = list(relative.parts)
    if parts and parts[-1].endswith(suffix):
        parts[-1] = parts[-1][: -len(suffix)]
    if len(parts) > 1 and parts[-1] == '__init__':
        parts.pop()
    return '.'.join(parts)


@functools.lru_cache(maxsize=256)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate an Ant-style glob into a regular expression.

    '**/' matches zero or more directories, '**' matches anything, '*'
    matches within one path segment and '?' matches one character of a
    segment. Patterns are matched against POSIX paths relative to a root.

    Args:
        pattern: The glob pattern.

    Returns:
        Compiled regular expression matching the whole relative path.

    Example:
        >>> bool(compile_glob('**/*.py').match('cart.py'))
        True
        >>> bool(compile_glob('shop/*.py').match('shop/sub/cart.py'))
        False
    """
    pattern = pattern.replace('\\', '/').lstrip('/')
    if pattern.endswith('/'):
        pattern += '**'
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith('**/', i):
            out.append('(?:.*/)?')
            i += 3
        elif pattern.startswith('**', i):
            out.append('.*')
            i += 2
        elif pattern[i] == '*':
            out.append('[^/]*')
            i += 1
        elif pattern[i] == '?':
            out.append('[^/]')
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile(''.join(out) + r'\Z')


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    """Check a root-relative POSIX path against a collection of globs."""
    return any(compile_glob(pattern).match(relative_path) for pattern in patterns)


def mtime_millis(path: Path) -> int:
    """Return a file's modification time in epoch milliseconds."""
    return path.stat().st_mtime_ns // 1_000_000


class ChangeScanner:
    """Finds source files that are new or modified since their last run.

    A file is changed when the store has no record for it, or when its
    modification time is strictly greater than its recorded run time plus
    stale_millis. The tolerance absorbs timestamp resolution and clock
    skew between build stages.

    Attributes:
        includes: Globs a file must match to be scanned.
        excludes: Globs that remove a file from the scan.
        stale_millis: Tolerance window in milliseconds.
        store: Run history to compare against. Never written.
        scanned: Every SourceUnit enumerated by the last scan().
    """

    def __init__(
        self,
        includes: Iterable[str] | None,
        excludes: Iterable[str] | None,
        stale_millis: int,
        store: RunHistoryStore,
    ) -> None:
        """Create a scanner.

        Args:
            includes: Include globs. Defaults to '**/*.py' when empty.
            excludes: Exclude globs.
            stale_millis: Non-negative tolerance window in milliseconds.
            store: Run history to compare modification times against.

        Raises:
            ConfigurationError: If stale_millis is negative.
        """
        if stale_millis < 0:
            raise ConfigurationError(f'stale_millis must be >= 0, got {stale_millis}')
        self.includes: tuple[str, ...] = tuple(includes or ()) or DEFAULT_INCLUDES
        self.excludes: tuple[str, ...] = tuple(excludes or ())
        self.stale_millis = stale_millis
        self.store = store
        self.scanned: list[SourceUnit] = []

    def scan(self, roots: Iterable[str | os.PathLike[str]]) -> set[Path]:
        """Return the files under roots that are new or modified.

        Roots that don't exist or aren't directories are skipped: optional
        source roots are common. Files that can't be stat'ed are logged
        and skipped.

        Args:
            roots: Source root directories, scanned recursively.

        Returns:
            Set of absolute paths of changed files.

        Raises:
            ConfigurationError: If two files map onto the same module name.
        """
        self.scanned = []
        owners: dict[str, Path] = {}
        changed: set[Path] = set()

        for root in roots:
            root_path = Path(root)
            if not root_path.is_dir():
                logger.debug('Skipping source root %s: not a directory', root_path)
                continue
            root_path = root_path.resolve()

            for path in self.discover(root_path):
                unit = SourceUnit(path=path, module=module_name(path, root_path), root=root_path)
                previous = owners.setdefault(unit.module, path)
                if previous != path:
                    msg = f"Files '{previous}' and '{path}' both map to module '{unit.module}'"
                    raise ConfigurationError(msg)

                try:
                    modified = mtime_millis(path)
                except OSError as exc:
                    logger.warning('Skipping unreadable file %s: %s', path, exc)
                    continue

                self.scanned.append(unit)
                if self.is_changed(path, modified):
                    changed.add(path)

        logger.debug('Scanned %d files, %d changed', len(self.scanned), len(changed))
        return changed

    def is_changed(self, path: Path, modified_millis: int) -> bool:
        """Decide whether a file with the given mtime counts as changed.

        Args:
            path: Path of the file.
            modified_millis: Its modification time in epoch milliseconds.

        Returns:
            True for new files and files modified beyond the tolerance.
        """
        last_run = self.store.get(path)
        if last_run is None:
            return True
        return modified_millis > last_run + self.stale_millis

    def discover(self, root: Path) -> Iterator[Path]:
        """Yield files under root matching includes and not excludes.

        Files are yielded in sorted order so scans are reproducible.

        Args:
            root: Absolute, resolved root directory.

        Yields:
            Absolute paths of matching files.
        """

        def log_walk_error(exc: OSError) -> None:
            logger.warning('Skipping unreadable directory %s: %s', exc.filename, exc)

        for dirpath, dirnames, filenames in os.walk(root, onerror=log_walk_error):
            dirnames.sort()
            current = Path(dirpath)
            for filename in sorted(filenames):
                path = current / filename
                relative = path.relative_to(root).as_posix()
                if not matches_any(relative, self.includes):
                    continue
                if matches_any(relative, self.excludes):
                    continue
                yield path


def scan(
    roots: Iterable[str | os.PathLike[str]],
    includes: Iterable[str] | None,
    excludes: Iterable[str] | None,
    stale_millis: int,
    store: RunHistoryStore,
) -> set[Path]:
    """Return the new or modified files under roots.

    Convenience wrapper around ChangeScanner for one-off scans.

    Args:
        roots: Source root directories.
        includes: Include globs. Defaults to '**/*.py' when empty.
        excludes: Exclude globs.
        stale_millis: Tolerance window in milliseconds.
        store: Run history to compare against.

    Returns:
        Set of absolute paths of changed files.
    """
    return ChangeScanner(includes, excludes, stale_millis, store).scan(roots)
