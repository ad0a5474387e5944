"""
    Error kinds raised by the tensor kernels and the graph runtime.

    Each kind also derives from the closest builtin exception,
    so callers can catch either the specific kind or the builtin.
"""


class AutogradError(Exception):
    pass


class ShapeMismatch(AutogradError, ValueError):
    pass


class InvalidIndex(AutogradError, IndexError):
    pass


class InvalidOperation(AutogradError, RuntimeError):
    pass


class MissingFeed(AutogradError, KeyError):
    def __str__(self):
        # KeyError quotes its argument, keep the plain message
        return str(self.args[0]) if self.args else ""


class AllocationFailure(AutogradError, MemoryError):
    pass
