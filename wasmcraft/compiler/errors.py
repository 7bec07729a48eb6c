"""Compile-time error taxonomy.

Every failure raised while turning a module into command functions derives
from :class:`CompileError`. Compilation is deterministic, so none of these are
retried: the same input always raises the same error.  Runtime traps are not
errors of this kind; they are compiled into the output (see ``TRAP_CODES``).
"""
from __future__ import annotations


class CompileError(Exception):
    """Base class for all compiler failures."""


class ValidationError(CompileError):
    """The module is malformed or ill-typed."""

    def __init__(self, message, section=None, offset=None):
        self.message = message
        self.section = section
        self.offset = offset
        where = []
        if section is not None:
            where.append(f"section {section}")
        if offset is not None:
            where.append(f"offset 0x{offset:x}")
        text = message if not where else f"{message} ({', '.join(where)})"
        super().__init__(text)


class UnsupportedFeature(CompileError):
    """A recognized construct that cannot be represented on the target."""

    def __init__(self, feature, construct, offset=None):
        self.feature = feature
        self.construct = construct
        self.offset = offset
        text = f"unsupported {feature} construct: {construct}"
        if offset is not None:
            text += f" (offset 0x{offset:x})"
        super().__init__(text)


class UnresolvedImport(CompileError):
    """An imported function has no matching host primitive."""

    def __init__(self, module, name, expected, reason=None):
        self.module = module
        self.name = name
        self.expected = expected
        text = f"unresolved import {module}.{name} {expected}"
        if reason:
            text += f": {reason}"
        super().__init__(text)


class ResourceLimitExceeded(CompileError):
    """The module needs more than the target can address."""

    def __init__(self, resource, requested, limit):
        self.resource = resource
        self.requested = requested
        self.limit = limit
        super().__init__(f"{resource} {requested} exceeds the limit of {limit}")


class EmitError(CompileError):
    """Generated output violates a target constraint (a compiler bug)."""


__all__ = [
    "CompileError",
    "EmitError",
    "ResourceLimitExceeded",
    "UnresolvedImport",
    "UnsupportedFeature",
    "ValidationError",
]
