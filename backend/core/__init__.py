"""
Record-keeping core: sequence codes, change diffs and store guards
"""
from .store import (
    StoreUnavailableError,
    store_guard
)

from .code_generator import (
    CodeGeneratorService,
    NotFoundError,
    ConcurrencyExhaustedError,
    format_code,
    DEFAULT_COUNTERS
)

from .change_diff import (
    UNDEFINED,
    ChangeSet,
    FieldChange,
    build_changes,
    merge_defined,
    values_equal
)

from .unique_validation import UniqueValidationService

__all__ = [
    # Store
    'StoreUnavailableError',
    'store_guard',
    # Sequence codes
    'CodeGeneratorService',
    'NotFoundError',
    'ConcurrencyExhaustedError',
    'format_code',
    'DEFAULT_COUNTERS',
    # Change diff
    'UNDEFINED',
    'ChangeSet',
    'FieldChange',
    'build_changes',
    'merge_defined',
    'values_equal',
    # Uniqueness
    'UniqueValidationService',
]
