"""
Error types shared by the ContentVersion Transfer Tool.
"""

from typing import Optional


class TransferError(Exception):
    """Base class for all errors raised by cvtt"""

    pass


class SourceReadError(TransferError):
    """Raised when the CSV manifest cannot be opened or parsed"""

    pass


class RowError(TransferError):
    """Raised when a single manifest row is missing required data"""

    def __init__(self, message: str, row_number: int):
        super().__init__(message)
        self.row_number = row_number


class SizeProbeError(TransferError):
    """Raised when a file referenced by the manifest cannot be stat'ed"""

    def __init__(self, message: str, row_number: int, path: str):
        super().__init__(message)
        self.row_number = row_number
        self.path = path


class SinkWriteError(TransferError):
    """Raised when a downloaded file cannot be written to its destination"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class OrgConnectionError(TransferError):
    """Raised when there are issues resolving an org connection"""

    pass


class RunStateError(TransferError):
    """Raised on an illegal run phase transition"""

    pass
