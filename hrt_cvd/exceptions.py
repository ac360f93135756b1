"""
Error types raised by the cohort preprocessing pipeline.

Schema, alignment and leakage problems abort the whole run. Row-level
exclusions are not errors; stages count them instead.
"""


class CohortPipelineError(Exception):
    """Base class for fatal pipeline errors."""


class ConfigError(CohortPipelineError, ValueError):
    """Invalid pipeline configuration."""


class SchemaError(CohortPipelineError, KeyError):
    """A required column is absent or an input table is malformed."""

    def __str__(self):
        # KeyError repr-quotes its message
        return str(self.args[0]) if self.args else ""


class AlignmentError(CohortPipelineError, ValueError):
    """Train and test column sets diverge."""


class LeakageError(CohortPipelineError, RuntimeError):
    """Held-out rows would reach a fitted model."""
