# -*- coding: utf-8 -*-
"""Exception types raised by Windrow.

Every error here describes a plan that can never execute correctly, so
none of them is retried. They are raised at construction, explain or
expansion time and surface to the caller unchanged.
"""


class WindrowError(Exception):
    """Base Windrow exception."""
    pass


class ConfigurationError(WindrowError, ValueError):
    """Invalid or unsupported windowing/aggregation configuration."""
    pass


class SchemaError(WindrowError, ValueError):
    """A field reference does not fit the schema it points into."""
    pass


class TypeMismatchError(WindrowError, TypeError):
    """An aggregate function was applied to a field of the wrong type."""
    pass


class PreconditionViolation(WindrowError):
    """An engine-level precondition was broken (e.g. wrong input count)."""
    pass
