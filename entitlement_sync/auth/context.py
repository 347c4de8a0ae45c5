from dataclasses import dataclass


@dataclass
class SuperAdminContext:
    """Identity context for operator requests. Operators act across every installation."""
    super_admin_id: str
    email: str


@dataclass
class InternalCallerContext:
    """A scheduler or sibling service that presented the shared internal secret."""
    request_id: str | None = None
