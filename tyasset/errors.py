"""
Error types raised by the TY asset decoders.

Untrusted input never crashes the caller: every failure on file contents
surfaces as one of these types.
"""


class TYFormatError(ValueError):
    """Base class for all asset decoding errors."""


class ArchiveIOError(TYFormatError, OSError):
    """Container could not be opened or read (missing, empty, short read)."""


class UnknownFormatError(TYFormatError):
    """No recognized container layout."""


class MalformedHeaderError(TYFormatError):
    """Counts or offsets in a header failed sanity checks."""


class TruncatedDataError(TYFormatError):
    """A declared size or offset runs past the end of the buffer."""


class AmbiguousGeometryError(TYFormatError):
    """No mesh could be validated in a geometry stream."""


class NotFoundError(TYFormatError, KeyError):
    """Archive lookup miss."""

    def __str__(self):
        return str(self.args[0]) if self.args else "not found"


class DecodeCancelled(TYFormatError):
    """A long scan was stopped by the caller's cancellation event."""
