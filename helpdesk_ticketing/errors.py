"""Error taxonomy for helpdesk-ticketing.

The core raises these unmodified; adapters (the REST router) map them to
their own status codes.
"""


class TicketingError(Exception):
    """Base class for all ticketing errors."""

    pass


class NotFoundError(TicketingError):
    """Raised when a ticket or history item does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ForbiddenError(TicketingError):
    """Raised when the actor lacks permission for the operation."""

    pass


class InvalidFilterError(TicketingError):
    """Raised when a filter value cannot be interpreted (e.g. a bad date)."""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid value for filter '{field}': {value!r}")


class ConflictError(TicketingError):
    """Reserved for concurrent-modification conflicts."""

    pass
