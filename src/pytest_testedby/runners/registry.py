"""Central registry for test runners.

The configured runner name is looked up here. Third-party runners can be
registered on the default registry before the orchestrator runs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pytest_testedby.errors import ConfigurationError


if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_testedby.runners.protocol import TestRunner


class RunnerRegistry:
    """Central registry for test runners.

    Example:
        >>> from pytest_testedby.runners.pytest_runner import PytestRunner
        >>> registry = RunnerRegistry()
        >>> registry.register(PytestRunner)
        >>> 'pytest' in registry.available()
        True
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._runners: dict[str, type[TestRunner]] = {}

    def register(
        self,
        runner_class: type[TestRunner],
        name: str | None = None,
    ) -> None:
        """Register a runner class.

        Args:
            runner_class: The runner class to register.
            name: Optional name to register under. If not provided,
                  uses the runner's name property.
        """
        key = name if name is not None else runner_class().name
        self._runners[key] = runner_class

    def register_decorator(
        self,
        name: str | None = None,
    ) -> Callable[[type[TestRunner]], type[TestRunner]]:
        """Decorator to register a runner class.

        Args:
            name: Optional name to register under.

        Returns:
            Decorator function that registers the class.
        """

        def decorator(runner_class: type[TestRunner]) -> type[TestRunner]:
            self.register(runner_class, name=name)
            return runner_class

        return decorator

    def get(self, name: str) -> TestRunner:
        """Get a runner instance by name.

        Args:
            name: The registered name of the runner.

        Returns:
            An instance of the requested runner.

        Raises:
            ConfigurationError: If no runner is registered with the given name.
        """
        if name not in self._runners:
            available = ', '.join(sorted(self._runners)) or 'none'
            raise ConfigurationError(f"Unknown runner: '{name}' (available: {available})")
        return self._runners[name]()

    def available(self) -> list[str]:
        """List all registered runner names.

        Returns:
            List of registered runner names.
        """
        return list(self._runners.keys())
