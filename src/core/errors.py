"""
Exception taxonomy for the monitoring engine.

Configuration APIs raise these synchronously to their caller. Scheduled
entry points catch them per entity and log.
"""


class MonitoringError(Exception):
    """Base class for all engine errors"""


class ValidationError(MonitoringError, ValueError):
    """Malformed configuration input rejected at the API boundary"""


class NotFoundError(MonitoringError, LookupError):
    """Referenced entity does not exist"""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConfigurationReferenceError(MonitoringError):
    """A rule or alert references an unknown metric or a malformed expression"""
