"""Operation reporting."""

from reporting.report import ItemResult, OperationReport

__all__ = ['ItemResult', 'OperationReport']
