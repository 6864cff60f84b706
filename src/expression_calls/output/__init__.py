"""Output generation: tabular resolved calls and dual-format file writing."""

from expression_calls.output.writers import (
    CALL_SCHEMA,
    resolved_calls_to_frame,
    write_call_output,
)

__all__ = [
    "CALL_SCHEMA",
    "resolved_calls_to_frame",
    "write_call_output",
]
