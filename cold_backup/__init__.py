"""Cold backup of a fleet-scheduled database service to S3."""

__version__ = "0.1.0"
