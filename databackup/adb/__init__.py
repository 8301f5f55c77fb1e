from .client import ADBClient, ADBConnectionError, ADBError, ADBResult, ADBTimeoutError
from .gateway import ExecResult, PackageDetails, PrivilegedGateway
from .local_client import LocalShellClient

__all__ = [
    "ADBClient",
    "ADBConnectionError",
    "ADBError",
    "ADBResult",
    "ADBTimeoutError",
    "ExecResult",
    "LocalShellClient",
    "PackageDetails",
    "PrivilegedGateway",
]
