"""
Kennel exceptions
"""


class KennelError(Exception):
    """Base exception for all kennel errors"""

    pass


class StorageError(KennelError):
    """Raised when durable state (mailbox, dog state, run history) cannot be read or written"""

    def __init__(self, message: str, path: object | None = None):
        super().__init__(message)
        self.path = path


class LockTimeout(StorageError):
    """Raised when a file lock is not acquired before its deadline"""

    pass


class ConflictError(KennelError):
    """Raised when work is assigned to a dog that is already working"""

    def __init__(self, message: str, name: str = ""):
        super().__init__(message)
        self.name = name


class NotFoundError(KennelError):
    """Raised when a dog or mailbox name is unknown"""

    def __init__(self, message: str, name: str = ""):
        super().__init__(message)
        self.name = name


class AddressError(KennelError):
    """Raised when a recipient address cannot be resolved to a mailbox"""

    def __init__(self, message: str, address: str = ""):
        super().__init__(message)
        self.address = address


class StartError(KennelError):
    """Raised when the session controller fails to start a session"""

    def __init__(self, message: str, name: str = ""):
        super().__init__(message)
        self.name = name


class SessionProbeError(KennelError):
    """Raised when a liveness probe fails (state unknown, not "dead")"""

    def __init__(self, message: str, name: str = ""):
        super().__init__(message)
        self.name = name


class NilMailboxError(KennelError):
    """Raised when a pending spawn without a mailbox is asked to archive"""

    pass
