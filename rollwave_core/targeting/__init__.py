from rollwave_core.targeting.filters import (
    Comparison,
    FilterSyntaxError,
    Junction,
    combine_filters,
    compile_filter,
    parse_filter,
    validate_filter,
)

__all__ = [
    "Comparison",
    "FilterSyntaxError",
    "Junction",
    "combine_filters",
    "compile_filter",
    "parse_filter",
    "validate_filter",
]
