"""Identity and connection oracle.

The chat core consumes users and the connection graph through the
IdentityOracle contract. UserDirectory is the DuckDB-backed implementation
shipped with the service.
"""

from .base import IdentityOracle
from .service import UserDirectory

__all__ = ["IdentityOracle", "UserDirectory"]
