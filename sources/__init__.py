"""Sources package for docwatch.

Per-source YAML definitions live beside this module; ``SourceLoader`` reads
and validates them.
"""

from .loader import SOURCE_KINDS, SourceConfig, SourceConfigError, SourceLoader

__all__ = [
    'SOURCE_KINDS',
    'SourceConfig',
    'SourceConfigError',
    'SourceLoader'
]
