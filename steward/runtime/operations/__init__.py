from __future__ import annotations

from .executor import OperationContext, OperationExecutor
from .files import file_operations
from .registry import (
    FunctionOperation,
    OperationAnalysis,
    OperationDefinition,
    OperationRegistry,
    OperationRegistryError,
)

__all__ = [
    "FunctionOperation",
    "OperationAnalysis",
    "OperationContext",
    "OperationDefinition",
    "OperationExecutor",
    "OperationRegistry",
    "OperationRegistryError",
    "file_operations",
]
