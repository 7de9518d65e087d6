"""
Exception hierarchy shared by every mod manager component.

Single-item operations raise one of these; bulk operations catch them per
item and record the message in their outcome.
"""


class ModManagerError(RuntimeError):
    """Base class for all mod manager failures."""


class IoError(ModManagerError):
    """A filesystem operation failed (missing folder, rename, permissions)."""


class ArchiveError(ModManagerError):
    """An archive is corrupt, unsupported or contains unsafe member paths."""


class ValidationError(ModManagerError):
    """Caller input was rejected before anything was touched."""


class NotFoundError(ModManagerError):
    """An asset, entity, category or preset id does not exist."""


class ElevationError(ModManagerError):
    """Launching an executable requires administrator rights."""


class UserCancelledError(ModManagerError):
    """The user dismissed a prompt (elevation, file picker)."""


class OperationInProgressError(ModManagerError):
    """A bulk toggle or preset apply is already running for this library."""
