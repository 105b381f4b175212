"""
Spendguard error types.

Policy denials are never raised: they come back as result values. These
exceptions cover configuration mistakes, unreadable persisted state, and
failures inside the execution collaborator.
"""


class SpendGuardError(Exception):
    """Base error for all Spendguard operations."""
    pass


class InvalidConfigError(SpendGuardError, ValueError):
    """A policy configuration value is out of range or of the wrong type."""
    pass


# Storage errors
class StorageError(SpendGuardError):
    """Base error for the key-value storage collaborator."""
    pass


class CorruptBlobError(StorageError):
    """A persisted blob could not be decoded."""
    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Malformed blob under '{key}': {message}")


# Execution errors
class ExecutionError(SpendGuardError):
    """Base error for transfer submission failures."""
    pass


class TransferRejectedError(ExecutionError):
    """The wallet provider refused the transfer."""
    def __init__(self, message: str, code: int | None = None):
        self.code = code
        prefix = f"Transfer rejected ({code})" if code is not None else "Transfer rejected"
        super().__init__(f"{prefix}: {message}")


class ExecutionTimeoutError(ExecutionError):
    """The wallet provider did not answer in time."""
    pass


# Audit errors
class AuditChainError(SpendGuardError, RuntimeError):
    """The audit log fails hash-chain verification."""
    def __init__(self, line_number: int, message: str):
        self.line_number = line_number
        super().__init__(f"Audit chain broken at line {line_number}: {message}")
