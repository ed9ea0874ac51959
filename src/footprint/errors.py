from __future__ import annotations


class FootprintError(Exception):
    """Base class for every error this package raises on purpose."""


class StoreError(FootprintError):
    pass


class ConfigError(FootprintError):
    pass


class InvalidRepoError(FootprintError):
    pass


class ExportError(FootprintError):
    pass


class DiskSpaceError(ExportError):
    def __init__(self, need: int, have: int) -> None:
        super().__init__(f"insufficient disk space: need {need} bytes, have {have}")
        self.need = need
        self.have = have


class DirtyExportRepoError(ExportError):
    def __init__(self, path: str, operation: str, hint: str) -> None:
        super().__init__(f"export repo has incomplete {operation}; resolve with: cd {path} && {hint}")
        self.path = path
        self.operation = operation


class TransportError(FootprintError):
    pass


class MergeConflictError(FootprintError):
    pass


class LockError(FootprintError):
    pass


class LockTimeoutError(LockError):
    pass
