"""Reporting for selective test runs."""

from pytest_testedby.reporting.console import ConsoleReporter


__all__ = ['ConsoleReporter']
