"""
Authorization exceptions.
"""


class AuthorizationError(Exception):
    """Base class for access-control errors."""
    pass


class ConfigurationError(AuthorizationError):
    """Raised when a mutation would break a catalog, role or assignment invariant."""
    pass


class CatalogIntegrityError(ConfigurationError):
    """Raised when stored catalog data violates an invariant at read time."""
    pass


class AssignmentError(ConfigurationError):
    """Raised when an assignment or role binding cannot be stored."""
    pass


class ResourceNotFound(AuthorizationError):
    """Raised when a resource code (or another catalog id) is unknown."""

    def __init__(self, key: object, kind: str = "resource"):
        self.key = key
        self.kind = kind
        super().__init__(f"Unknown {kind}: {key}")
