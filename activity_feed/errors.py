"""Exceptions raised by the external-collaborator clients."""


class GatewayError(Exception):
    """An entity lookup failed in transport (timeout, 5xx, bad payload)."""


class EntityNotFound(GatewayError):
    """The requested row does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AggregationError(Exception):
    """The feed aggregation backend could not produce a page."""


class ChannelError(Exception):
    """A live mutation channel dropped or could not be opened."""
